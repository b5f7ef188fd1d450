from aurelia.common.logging_setup import get_logger

logger = get_logger("aurelia.orders")

MAX_ITEMS_PER_ORDER = 50
MAX_QUANTITY_PER_ITEM = 10
