import hashlib
import hmac

from .config import Settings, get_settings

SIGNATURE_PREFIX = "sha256="


class InsecureSecretError(Exception):
    pass


class InvalidSignatureError(Exception):
    pass


WEAK_SECRETS = {
    "a-random-string",
    "change-me",
    "development",
    "secret",
}


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_webhook_signature(
    body: bytes,
    signature_header: str | None,
    settings: Settings | None = None,
) -> None:
    """
    Checks x-hub-signature-256 against the raw body.
    Skipped when no secret is configured outside production; raises
    InsecureSecretError for a missing or weak secret in production.
    """
    settings = settings or get_settings()
    secret = settings.github_webhook_secret

    if settings.environment == "production":
        if not secret:
            raise InsecureSecretError("GITHUB_WEBHOOK_SECRET must be set")
        if secret in WEAK_SECRETS:
            raise InsecureSecretError(
                "Production environment detected with weak GITHUB_WEBHOOK_SECRET"
            )

    if not secret:
        return

    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        raise InvalidSignatureError("Missing or malformed signature header")

    expected = compute_signature(secret, body)
    if not hmac.compare_digest(expected, signature_header):
        raise InvalidSignatureError("Signature mismatch")
