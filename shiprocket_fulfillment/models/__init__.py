from shiprocket_fulfillment.models.order import Order, OrderItem
from shiprocket_fulfillment.models.store_settings import StoreSetting
