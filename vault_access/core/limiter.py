from slowapi import Limiter

from vault_access.core import config
from vault_access.features.users.dependencies import get_authorization_header


limiter = Limiter(key_func=get_authorization_header, enabled=config.RATE_LIMIT_ENABLED)
