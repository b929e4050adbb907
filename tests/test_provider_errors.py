from src.domain.provider_errors import provider_error_detail, provider_error_http_status
from src.domain.webhook_errors import (
    AuthenticityError,
    InsufficientFundsError,
    MappingError,
    PersistenceTimeoutError,
    SignatureConfigurationError,
)
from src.providers.flutterwave.client import FlutterwaveProviderError


def test_http_status_contract():
    assert provider_error_http_status(InsufficientFundsError(company_id="co-1", required_cents=1, available_cents=0)) == 402
    assert provider_error_http_status(SignatureConfigurationError("missing")) == 503
    assert provider_error_http_status(AuthenticityError("invalid_signature")) == 401
    assert provider_error_http_status(PersistenceTimeoutError("timed out")) == 503
    assert provider_error_http_status(MappingError("no company")) == 502
    assert provider_error_http_status(FlutterwaveProviderError("Flutterwave API returned HTTP 503: busy")) == 503
    assert provider_error_http_status(FlutterwaveProviderError("Flutterwave API returned HTTP 400: bad")) == 502


def test_error_detail_shape():
    detail = provider_error_detail(
        provider="flutterwave",
        operation="create_payment_link",
        exc=FlutterwaveProviderError("Flutterwave connectivity error: refused"),
    )

    assert detail == {
        "type": "provider_error",
        "provider": "flutterwave",
        "operation": "create_payment_link",
        "category": "transient",
        "retryable": True,
        "message": "Flutterwave connectivity error: refused",
    }
