from dataclasses import dataclass

SUPPORTED_CURRENCIES = {"LYD", "USD", "EUR"}
MOBILE_MONEY_LIMIT = 5000
RESTRICTED_MERCHANT_TYPES = {"gambling", "weapons", "restricted"}

LIBYAN_CITIES = [
    "Tripoli", "Benghazi", "Misrata", "Zawiya", "Sabha",
    "Ajdabiya", "Al-Bayda", "Al-Marj", "Tobruk", "Derna",
]


@dataclass
class ComplianceResult:
    compliant: bool
    issues: list[str]


def is_valid_libyan_location(location: str) -> bool:
    lowered = location.lower()
    return any(city.lower() in lowered for city in LIBYAN_CITIES)


def check_libyan_compliance(
    amount: float,
    currency: str,
    payment_method: str,
    user_location: str | None = None,
    merchant_type: str | None = None,
) -> ComplianceResult:
    """Run every Libyan regulatory rule and collect all violations."""
    issues = []

    if currency not in SUPPORTED_CURRENCIES:
        issues.append("Currency not supported in Libya")

    if payment_method == "mobile_money" and amount > MOBILE_MONEY_LIMIT:
        issues.append("Mobile money transactions limited to 5000 LYD")

    # No location means nothing to check
    if user_location and not is_valid_libyan_location(user_location):
        issues.append("Payment location restrictions apply")

    if merchant_type in RESTRICTED_MERCHANT_TYPES:
        issues.append("Merchant type not permitted under Libyan regulations")

    return ComplianceResult(compliant=not issues, issues=issues)
