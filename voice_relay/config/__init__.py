"""
Configuration module for the realtime voice relay.

Key components:
- constants: Application-wide constants such as frame types, limits and defaults.
- logging_config: Console and rotating file logging setup.
- settings: Environment-backed settings with startup validation of the relay secrets.

Usage examples:
```python
from voice_relay.config.constants import LOGGER_NAME, MAX_FRAME_SIZE
from voice_relay.config.logging_config import configure_logging
from voice_relay.config.settings import load_settings

logger = configure_logging()
settings = load_settings()
settings.validate_relay()  # raises ConfigError when secrets are missing
```
"""
