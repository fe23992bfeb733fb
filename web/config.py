"""
Admin API configuration.
"""
from fulfillment.config import config, VERSION

# Web server settings
WEB_HOST = config.web.host
WEB_PORT = config.web.port

# Manual trigger throttle (slowapi limit string)
TRIGGER_RATE_LIMIT = config.web.trigger_rate_limit

__all__ = ["WEB_HOST", "WEB_PORT", "TRIGGER_RATE_LIMIT", "VERSION"]
