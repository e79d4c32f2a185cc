"""
OTP Pipeline - Core Package

Leaf utilities and external collaborators: phone normalization, the
error taxonomy, configuration, structured logging, and the provider /
registration gateways.

Light imports (stdlib + PyYAML + httpx):
  - core.phone: normalize, parse_phone_list
  - core.providers: JasaOtpProvider, NumberProvider
  - core.registration: RegistrationGateway, generate_registration_data

Heavy imports (require Playwright):
  - core.browser: PlaywrightRegistrationGateway
"""

from core.exceptions import (
    PipelineError, ValidationError, ProviderError, NoOtpYet,
    GatewayError, RegistrationError, LoginError,
    StoreCorruption, InvalidTransition,
)
from core.phone import normalize, is_valid, require_phone, parse_phone_list, OPERATOR_PREFIXES
from core.providers import AcquiredNumber, NumberProvider, JasaOtpProvider, extract_otp
from core.registration import RegistrationData, RegistrationGateway, generate_registration_data


def __getattr__(name):
    """Lazy-load the Playwright gateway."""
    if name == "PlaywrightRegistrationGateway":
        import core.browser as _browser
        return _browser.PlaywrightRegistrationGateway
    raise AttributeError(f"module 'core' has no attribute {name!r}")
