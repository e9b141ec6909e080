"""Generation provider adapters."""

from mediagen.services.providers.base import (
    CallbackEvent,
    GenerationRequest,
    ProviderAdapter,
    ProviderStatus,
    SubmissionResult,
    validate_request,
)
from mediagen.services.providers.registry import ProviderRegistry, build_provider_registry

__all__ = [
    "CallbackEvent",
    "GenerationRequest",
    "ProviderAdapter",
    "ProviderStatus",
    "SubmissionResult",
    "validate_request",
    "ProviderRegistry",
    "build_provider_registry",
]
