import logging

logger = logging.getLogger("aurelia")
