"""scim_sync."""

from .monitoring.logger import configure_logger

# Configure logger with default settings (just console logging)
# create_app reconfigures it with the configured log level
configure_logger()
