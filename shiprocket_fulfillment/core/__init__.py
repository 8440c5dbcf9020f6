from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.database import Base, get_db_session
