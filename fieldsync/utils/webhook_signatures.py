"""
Webhook signature validation - verify ServiceM8 deliveries are authentic.

ServiceM8 signs the raw request body with HMAC-SHA256 using the shared
webhook secret. The header value may carry a "sha256=" prefix.
"""
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Validate HMAC-SHA256 over the raw (unparsed) body.
    Comparison is constant-time over the hex digest.
    """
    if not secret or not signature:
        return False

    sig = signature.strip()
    if sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    try:
        expected = compute_signature(secret, body)
        return hmac.compare_digest(expected, sig.lower())
    except (TypeError, ValueError) as e:
        logger.error("HMAC-SHA256 validation error: %s", str(e))
        return False


def compute_payload_hash(body: bytes) -> str:
    """SHA-256 of the raw payload for dedup and audit."""
    return hashlib.sha256(body).hexdigest()


class SignatureCheck:
    """Outcome of checking a delivery against the configured secret."""
    VALID = "valid"
    INVALID = "invalid"
    MISSING = "missing"
    UNSIGNED_ALLOWED = "unsigned_allowed"
    UNSIGNED_REJECTED = "unsigned_rejected"

    ACCEPTED = (VALID, UNSIGNED_ALLOWED)


def check_webhook_signature(signature: str, body: bytes, settings=None) -> str:
    """
    Decide whether a delivery is authentic.

    With a secret configured the signature must be present and valid. Without
    one, production rejects every delivery unless ALLOW_UNSIGNED_WEBHOOKS is
    set; other environments accept with a warning.
    """
    if settings is None:
        from fieldsync.config import get_settings
        settings = get_settings()

    secret = settings.webhook_secret
    if secret:
        if not signature:
            return SignatureCheck.MISSING
        if validate_hmac_sha256(secret, signature, body):
            return SignatureCheck.VALID
        return SignatureCheck.INVALID

    if settings.app_env == "production" and not settings.allow_unsigned_webhooks:
        logger.error("WEBHOOK_SECRET not set in production - rejecting webhook")
        return SignatureCheck.UNSIGNED_REJECTED

    logger.warning(
        "WEBHOOK_SECRET not set - accepting ServiceM8 webhook without signature "
        "verification. Configure the secret for production."
    )
    return SignatureCheck.UNSIGNED_ALLOWED
