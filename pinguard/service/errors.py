from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``.
    The ``message`` is operator-facing; clients only ever see the localized
    text returned by :func:`user_message` for the error code.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.retry_after = retry_after


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentialError(ValidationError):
    """PIN fails the strength policy or denylist (400)."""
    error_code = "invalid_credential"


class InvalidCredentialFormatError(InvalidCredentialError):
    """PIN is not exactly four numeric digits (400)."""
    error_code = "invalid_credential_format"


class AuthenticationFailedError(ServiceError):
    """PIN hash mismatch or unknown account (401)."""
    status_code = 401
    error_code = "authentication_failed"


class RateLimitExceededError(ServiceError):
    """Lockout active for the credential and origin key (429)."""
    status_code = 429
    error_code = "rate_limit_exceeded"


class DeviceNotAuthorizedError(ServiceError):
    """Device fingerprint is untrusted, pending, or revoked (403)."""
    status_code = 403
    error_code = "device_not_authorized"


class BiometricUnavailableError(ServiceError):
    status_code = 409
    error_code = "biometric_unavailable"


class BiometricFailedError(ServiceError):
    status_code = 401
    error_code = "biometric_failed"


class SessionExpiredError(ServiceError):
    """Session passed its absolute expiry or idle timeout (401)."""
    status_code = 401
    error_code = "session_expired"


class SessionInvalidError(ServiceError):
    """Session unknown, terminated, or failed validation (401)."""
    status_code = 401
    error_code = "session_invalid"


class TokenRevokedError(SessionInvalidError):
    error_code = "token_revoked"


class UsageExhaustedError(SessionInvalidError):
    error_code = "usage_exhausted"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class GenerationExhaustedError(ServiceError):
    """Secure PIN generation hit its attempt bound (500)."""
    status_code = 500
    error_code = "generation_exhausted"


class InternalServiceError(ServiceError):
    """Store unavailable, signing failure, or any unexpected fault (503)."""
    status_code = 503
    error_code = "internal_error"


_USER_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "invalid_credential_format": "PIN must be exactly 4 digits.",
        "invalid_credential": "This PIN is too easy to guess. Please choose another.",
        "authentication_failed": "Invalid credentials.",
        "rate_limit_exceeded": "Too many attempts. Please try again later.",
        "device_not_authorized": "Device not authorized. Please contact your supervisor.",
        "biometric_unavailable": "Biometric sign-in is not available. Please use your PIN.",
        "biometric_failed": "Biometric sign-in failed. Please use your PIN.",
        "session_expired": "Your session has expired. Please sign in again.",
        "session_invalid": "Your session is no longer valid. Please sign in again.",
        "token_revoked": "Your session is no longer valid. Please sign in again.",
        "usage_exhausted": "Your session is no longer valid. Please sign in again.",
        "generation_exhausted": "Could not generate a PIN. Please try again.",
        "internal_error": "Authentication service temporarily unavailable.",
        "validation_error": "The request could not be processed.",
        "unauthorized": "Please sign in to continue.",
        "forbidden": "You do not have permission to perform this action.",
        "not_found": "The requested item was not found.",
        "conflict": "The request conflicts with the current state.",
        "server_error": "Authentication service temporarily unavailable.",
    },
    "fr": {
        "invalid_credential_format": "Le NIP doit comporter exactement 4 chiffres.",
        "invalid_credential": "Ce NIP est trop facile à deviner. Veuillez en choisir un autre.",
        "authentication_failed": "Identifiants invalides.",
        "rate_limit_exceeded": "Trop de tentatives. Veuillez réessayer plus tard.",
        "device_not_authorized": "Appareil non autorisé. Veuillez contacter votre superviseur.",
        "biometric_unavailable": "La connexion biométrique n'est pas disponible. Utilisez votre NIP.",
        "biometric_failed": "La connexion biométrique a échoué. Utilisez votre NIP.",
        "session_expired": "Votre session a expiré. Veuillez vous reconnecter.",
        "session_invalid": "Votre session n'est plus valide. Veuillez vous reconnecter.",
        "token_revoked": "Votre session n'est plus valide. Veuillez vous reconnecter.",
        "usage_exhausted": "Votre session n'est plus valide. Veuillez vous reconnecter.",
        "generation_exhausted": "Impossible de générer un NIP. Veuillez réessayer.",
        "internal_error": "Service d'authentification temporairement indisponible.",
        "validation_error": "La demande n'a pas pu être traitée.",
        "unauthorized": "Veuillez vous connecter pour continuer.",
        "forbidden": "Vous n'avez pas la permission d'effectuer cette action.",
        "not_found": "L'élément demandé est introuvable.",
        "conflict": "La demande est en conflit avec l'état actuel.",
        "server_error": "Service d'authentification temporairement indisponible.",
    },
}

ERROR_CODES = frozenset(_USER_MESSAGES["en"])


def user_message(code: str, locale: Optional[str] = None) -> str:
    """Return the localized, non-technical message for an error code."""
    lang = (locale or "en").split(",")[0].split("-")[0].strip().lower()
    catalogue = _USER_MESSAGES.get(lang, _USER_MESSAGES["en"])
    return catalogue.get(code) or _USER_MESSAGES["en"].get(code) or _USER_MESSAGES["en"]["server_error"]


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialFormatError",
    "InvalidCredentialError",
    "AuthenticationFailedError",
    "RateLimitExceededError",
    "DeviceNotAuthorizedError",
    "BiometricUnavailableError",
    "BiometricFailedError",
    "SessionExpiredError",
    "SessionInvalidError",
    "TokenRevokedError",
    "UsageExhaustedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "GenerationExhaustedError",
    "InternalServiceError",
    "ERROR_CODES",
    "user_message",
]
