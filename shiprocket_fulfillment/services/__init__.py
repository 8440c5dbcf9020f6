# Services layer for Shiprocket fulfillment
