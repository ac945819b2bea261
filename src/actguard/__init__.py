"""
ActGuard - Authentication and Secrets Protection Core
Lockout, CAPTCHA gating, MFA, risk-scored sessions and an audit trail.
"""

__version__ = "0.1.0"

from actguard.core.config import settings
from actguard.core.logging import get_logger

logger = get_logger(__name__)
logger.debug(f"ActGuard v{__version__} initialized")

__all__ = ["settings", "get_logger", "__version__"]
