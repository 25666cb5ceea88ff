"""
Security event logging.

Authentication failures, rate-limit hits, suspicious flagging and
administrative actions are written to a dedicated logger so they can be
routed separately from application logs.
"""

import logging
from typing import Optional


security_logger = logging.getLogger("review_api.security")


def log_auth_failure(user_id: Optional[int], review_id: int, action: str, ip_hash: Optional[str]):
    security_logger.warning(
        f"Failed {action} authorization for review {review_id} "
        f"(user={user_id}, ip_hash={ip_hash})"
    )


def log_rate_limit_hit(user_id: Optional[int], action: str, ip_hash: Optional[str]):
    security_logger.info(
        f"Rate limit hit for {action} (user={user_id}, ip_hash={ip_hash})"
    )


def log_suspicious_flag(user_id: Optional[int], review_id: int, reason: str, ip_hash: Optional[str]):
    security_logger.warning(
        f"Suspicious flagging activity on review {review_id}: {reason} "
        f"(user={user_id}, ip_hash={ip_hash})"
    )


def log_security_action(user_id: Optional[int], action: str, **context):
    details = ", ".join(f"{key}={value}" for key, value in context.items())
    security_logger.info(f"Security action {action} by user={user_id} {details}".rstrip())


def log_untrusted_identity(user_id: Optional[int], ip_hash: Optional[str]):
    security_logger.warning(
        f"Ignored identity headers without a valid API key "
        f"(claimed user={user_id}, ip_hash={ip_hash})"
    )
