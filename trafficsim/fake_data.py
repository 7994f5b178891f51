"""
Fake data generation
====================
Plausible synthetic customers, browsers and network timings for virtual
users. Every function accepts an optional random.Random so a seeded run is
reproducible.
"""

import random
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, TypeVar

from faker import Faker

T = TypeVar("T")

fake = Faker("en_US")
_default_rng = random.Random()


# =============================================================================
# REFERENCE DATA
# =============================================================================

# Card-network test numbers; never valid for real charges.
TEST_CREDIT_CARDS = [
    ("4111111111111111", "visa"),
    ("4012888888881881", "visa"),
    ("4222222222222", "visa"),
    ("5555555555554444", "mastercard"),
    ("5105105105105100", "mastercard"),
    ("2223003122003222", "mastercard"),
    ("378282246310005", "amex"),
    ("371449635398431", "amex"),
    ("6011111111111117", "discover"),
    ("6011000990139424", "discover"),
]

SPECIAL_REQUESTS = [
    "",
    "Window table if available",
    "Celebrating anniversary",
    "Birthday celebration",
    "Quiet table please",
    "High chair needed",
    "Wheelchair accessible",
    "Allergy to nuts",
    "Vegetarian options needed",
    "Running a few minutes late",
    "First time dining here",
    "Date night",
    "Business dinner",
    "No seafood please",
    "Prefer booth seating",
    "Gluten-free options needed",
]

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

# (width, height) with rough market share
VIEWPORT_SIZES = {
    (1920, 1080): 25,
    (1366, 768): 20,
    (1536, 864): 15,
    (1440, 900): 12,
    (1280, 720): 10,
    (2560, 1440): 8,
    (1920, 1200): 5,
    (3840, 2160): 5,
}

LANGUAGES = ["en-US", "en-GB", "es-US", "fr-FR", "de-DE", "it-IT", "pt-BR", "ja-JP", "ko-KR", "zh-CN"]

TIMEZONES = [
    "America/New_York", "America/Chicago", "America/Denver", "America/Los_Angeles",
    "America/Phoenix", "America/Anchorage", "Pacific/Honolulu", "Europe/London",
    "Europe/Paris", "Asia/Tokyo",
]

# Party sizes 2..8, weighted toward small tables
PARTY_SIZE_WEIGHTS = [35, 25, 20, 10, 5, 3, 2]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Address:
    street: str
    city: str
    state: str
    zip_code: str


@dataclass(frozen=True)
class CreditCard:
    number: str
    type: str
    expiry_month: str
    expiry_year: str
    cvv: str
    holder_name: str

    @property
    def expiry(self) -> str:
        return f"{self.expiry_month}/{self.expiry_year}"


@dataclass(frozen=True)
class CustomerProfile:
    """Synthetic customer; fixed for the life of a virtual user."""
    first_name: str
    last_name: str
    email: str
    phone: str
    address: Address
    credit_card: CreditCard

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def contact(self) -> Dict[str, str]:
        return {"name": self.full_name, "email": self.email, "phone": self.phone}


@dataclass(frozen=True)
class BrowserFingerprint:
    user_agent: str
    language: str
    viewport: tuple
    timezone: str
    platform: str
    cookie_enabled: bool
    do_not_track: str

    def span_attributes(self) -> Dict[str, Any]:
        return {
            "browser.user_agent": self.user_agent,
            "browser.language": self.language,
            "browser.viewport.width": self.viewport[0],
            "browser.viewport.height": self.viewport[1],
            "browser.platform": self.platform,
            "browser.cookie_enabled": self.cookie_enabled,
            "browser.do_not_track": self.do_not_track,
            "browser.timezone": self.timezone,
        }


@dataclass(frozen=True)
class NetworkTiming:
    """Offsets in ms from fetch start, shaped like the Navigation Timing API."""
    fetch_start: int
    domain_lookup_start: int
    domain_lookup_end: int
    connect_start: int
    connect_end: int
    request_start: int
    response_start: int
    response_end: int
    transfer_size: int
    encoded_body_size: int
    decoded_body_size: int

    @property
    def dns_ms(self) -> int:
        return self.domain_lookup_end - self.domain_lookup_start

    @property
    def connect_ms(self) -> int:
        return self.connect_end - self.connect_start

    @property
    def time_to_first_byte_ms(self) -> int:
        return self.response_start - self.fetch_start

    @property
    def response_ms(self) -> int:
        return self.response_end - self.response_start


# =============================================================================
# HELPERS
# =============================================================================

def _rng(rng: Optional[random.Random]) -> random.Random:
    return rng if rng is not None else _default_rng


def weighted_choice(options: Sequence[T], weights: Sequence[float],
                    rng: Optional[random.Random] = None) -> T:
    return _rng(rng).choices(list(options), weights=list(weights), k=1)[0]


def add_timing_jitter(base: float, jitter_percent: float = 0.2,
                      rng: Optional[random.Random] = None) -> int:
    """Spread `base` by up to +/- jitter_percent."""
    jitter = base * jitter_percent
    return round(base + _rng(rng).uniform(-jitter, jitter))


def detect_card_type(number: str) -> str:
    clean = number.replace("-", "").replace(" ", "")
    if clean.startswith("4"):
        return "visa"
    if clean.startswith(("5", "2")):
        return "mastercard"
    if clean.startswith("3"):
        return "amex"
    if clean.startswith("6"):
        return "discover"
    return "unknown"


def format_credit_card_number(number: str) -> str:
    """Group digits for display: amex 4-6-5, everything else in fours."""
    if len(number) == 15:
        return f"{number[:4]}-{number[4:10]}-{number[10:]}"
    return "-".join(number[i:i + 4] for i in range(0, len(number), 4))


# =============================================================================
# GENERATORS
# =============================================================================

def generate_credit_card(holder_name: str, rng: Optional[random.Random] = None) -> CreditCard:
    r = _rng(rng)
    number, card_type = r.choice(TEST_CREDIT_CARDS)
    digits = 4 if card_type == "amex" else 3
    cvv = str(r.randint(10 ** (digits - 1), 10 ** digits - 1))
    return CreditCard(
        number=number,
        type=card_type,
        expiry_month=f"{r.randint(1, 12):02d}",
        expiry_year=str(date.today().year + r.randint(1, 5))[-2:],
        cvv=cvv,
        holder_name=holder_name,
    )


def generate_customer_profile(rng: Optional[random.Random] = None) -> CustomerProfile:
    """Generate a complete customer: identity, contact, address and test card."""
    r = _rng(rng)
    # Generation is synchronous, so seeding the shared Faker here cannot
    # interleave with another user's draw.
    fake.seed_instance(r.getrandbits(32))

    first_name = fake.first_name()
    last_name = fake.last_name()
    local_part = r.choice([
        f"{first_name}.{last_name}",
        f"{first_name}{last_name}",
        f"{first_name[0]}{last_name}",
        f"{first_name}{r.randint(10, 99)}",
    ]).lower()

    return CustomerProfile(
        first_name=first_name,
        last_name=last_name,
        email=f"{local_part}@{fake.free_email_domain()}",
        phone=f"{r.randint(200, 999)}-{r.randint(200, 999)}-{r.randint(1000, 9999)}",
        address=Address(
            street=fake.street_address(),
            city=fake.city(),
            state=fake.state_abbr(include_territories=False),
            zip_code=fake.zipcode(),
        ),
        credit_card=generate_credit_card(f"{first_name} {last_name}", r),
    )


def generate_browser_fingerprint(rng: Optional[random.Random] = None) -> BrowserFingerprint:
    r = _rng(rng)
    user_agent = r.choice(USER_AGENTS)

    platform = "Win32"
    if "Macintosh" in user_agent:
        platform = "MacIntel"
    elif "Linux" in user_agent:
        platform = "Linux x86_64"

    return BrowserFingerprint(
        user_agent=user_agent,
        language=r.choice(LANGUAGES),
        viewport=weighted_choice(list(VIEWPORT_SIZES), list(VIEWPORT_SIZES.values()), r),
        timezone=r.choice(TIMEZONES),
        platform=platform,
        cookie_enabled=r.random() > 0.05,
        do_not_track="1" if r.random() > 0.7 else "0",
    )


def generate_network_timing(response_size: int = 8192,
                            rng: Optional[random.Random] = None) -> NetworkTiming:
    r = _rng(rng)
    fetch_start = 0
    domain_lookup_start = fetch_start + r.randint(1, 15)
    domain_lookup_end = domain_lookup_start + r.randint(5, 45)
    connect_start = domain_lookup_end + r.randint(1, 5)
    connect_end = connect_start + r.randint(15, 120)
    request_start = connect_end + r.randint(1, 10)
    response_start = request_start + r.randint(20, 180)
    response_end = response_start + r.randint(10, 200)

    return NetworkTiming(
        fetch_start=fetch_start,
        domain_lookup_start=domain_lookup_start,
        domain_lookup_end=domain_lookup_end,
        connect_start=connect_start,
        connect_end=connect_end,
        request_start=request_start,
        response_start=response_start,
        response_end=response_end,
        transfer_size=response_size + r.randint(100, 500),
        encoded_body_size=response_size,
        decoded_body_size=response_size + r.randint(0, 512),
    )


def generate_order_type(rng: Optional[random.Random] = None) -> str:
    return "delivery" if _rng(rng).random() < 0.7 else "pickup"


def generate_party_size(rng: Optional[random.Random] = None) -> int:
    sizes = list(range(2, 2 + len(PARTY_SIZE_WEIGHTS)))
    return weighted_choice(sizes, PARTY_SIZE_WEIGHTS, rng)


def generate_special_request(rng: Optional[random.Random] = None) -> str:
    return _rng(rng).choice(SPECIAL_REQUESTS)


def generate_reservation_slot(rng: Optional[random.Random] = None) -> Dict[str, str]:
    """A dinner slot 1-14 days ahead."""
    r = _rng(rng)
    day = date.fromordinal(date.today().toordinal() + r.randint(1, 14))
    times: List[str] = [f"{h}:{m}" for h in range(17, 21) for m in ("00", "30")] + ["21:00"]
    return {"date": day.isoformat(), "time": r.choice(times)}
