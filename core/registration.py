"""
OTP Pipeline — Registration Gateway Contract

The orchestrator drives the signup/login target only through this
contract. Implementations raise RegistrationError / LoginError with a
human-readable reason; any return counts as success.

    register(data: RegistrationData) -> None
    login(phone, password) -> None      # side effect: OTP sent to phone

generate_registration_data() synthesizes the signup form payload for a
freshly rented number.
"""

from __future__ import annotations

import random
import string
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Protocol, runtime_checkable

from core.phone import normalize

EMAIL_ALPHABET = string.ascii_lowercase + string.digits
EMAIL_LOCAL_LENGTH = 15
EMAIL_DOMAIN = "gmail.com"

MIN_AGE_YEARS = 20
MAX_AGE_YEARS = 60


@dataclass
class RegistrationData:
    """Signup form payload."""
    fullname: str
    phone: str
    email: str
    birthdate: str          # YYYY-MM-DD
    password: str
    pin: str
    security_answer: str
    order_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class RegistrationGateway(Protocol):
    def register(self, data: RegistrationData) -> None: ...

    def login(self, phone: str, password: str) -> None: ...


def random_email(rng: random.Random | None = None) -> str:
    rng = rng or random
    local = "".join(rng.choice(EMAIL_ALPHABET) for _ in range(EMAIL_LOCAL_LENGTH))
    return f"{local}@{EMAIL_DOMAIN}"


def random_birthdate(rng: random.Random | None = None, today: date | None = None) -> str:
    """Year 20-60 years back, any month, day 1-28 so every month is valid."""
    rng = rng or random
    today = today or date.today()
    max_year = today.year - MIN_AGE_YEARS
    min_year = today.year - MAX_AGE_YEARS
    year = rng.randint(min_year, max_year)
    month = rng.randint(1, 12)
    day = rng.randint(1, 28)
    return f"{year:04d}-{month:02d}-{day:02d}"


def generate_registration_data(
    phone: str,
    order_id: str = "",
    email: str | None = None,
    password: str = "@Facebook20",
    fullname: str = "AKUN TS",
    pin: str = "789789",
    security_answer: str = "111111",
    rng: random.Random | None = None,
    today: date | None = None,
) -> RegistrationData:
    return RegistrationData(
        fullname=fullname,
        phone=normalize(phone),
        email=email or random_email(rng),
        birthdate=random_birthdate(rng, today),
        password=password,
        pin=pin,
        security_answer=security_answer,
        order_id=order_id,
    )
