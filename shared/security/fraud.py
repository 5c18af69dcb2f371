"""
Heuristic fraud scoring for payment attempts.

The score runs from 0 to 100, higher is riskier. The private-network check is
a placeholder for real threat intelligence, not a production signal.
"""
import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from shared.config.database import utcnow

# Checked in order. Edge user agents also carry a Chrome token and are
# reported as Chrome.
_BROWSER_PATTERNS = [
    ("Chrome", re.compile(r"Chrome/(\d+)")),
    ("Firefox", re.compile(r"Firefox/(\d+)")),
    ("Safari", re.compile(r"Safari/(\d+)")),
    ("Edge", re.compile(r"Edg/(\d+)")),
]

_SUSPICIOUS_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
]

RECENT_USER_AGENT_WINDOW = 5
BROWSER_VERSION_TOLERANCE = 2


@dataclass
class PaymentHistoryEntry:
    created_at: datetime
    user_agent: str | None = None


@dataclass
class FraudCheckInput:
    amount: float
    currency: str
    payment_method: str
    ip_address: str | None = None
    user_agent: str | None = None
    # Oldest first
    user_history: list[PaymentHistoryEntry] = field(default_factory=list)


@dataclass
class FraudAssessment:
    score: int
    flags: list[str]


def _is_suspicious_ip(ip_address: str) -> bool:
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return any(address in network for network in _SUSPICIOUS_NETWORKS)


def extract_browser_info(user_agent: str) -> tuple[str, int]:
    for name, pattern in _BROWSER_PATTERNS:
        match = pattern.search(user_agent)
        if match:
            return name, int(match.group(1))
    return "Unknown", 0


def _is_inconsistent_user_agent(user_agent: str, history: list[PaymentHistoryEntry]) -> bool:
    recent = [h.user_agent for h in history[-RECENT_USER_AGENT_WINDOW:] if h.user_agent]
    if not recent:
        return False

    name, version = extract_browser_info(user_agent)
    return not any(
        other_name == name and abs(other_version - version) <= BROWSER_VERSION_TOLERANCE
        for other_name, other_version in map(extract_browser_info, recent)
    )


def assess_fraud_risk(data: FraudCheckInput, now: datetime | None = None) -> FraudAssessment:
    now = now or utcnow()
    score = 0
    flags: list[str] = []

    if data.amount > 10000:
        score += 30
        flags.append("high_amount")
    elif data.amount > 5000:
        score += 20
        flags.append("elevated_amount")
    elif data.amount > 1000:
        score += 10

    # Methods with a slower settlement path carry less inherent risk
    if data.payment_method == "bank_transfer":
        score -= 20
    elif data.payment_method == "mobile_money":
        score -= 10

    day_ago = now - timedelta(hours=24)
    recent_payments = sum(1 for h in data.user_history if h.created_at > day_ago)
    if recent_payments > 5:
        score += 25
        flags.append("high_velocity")
    elif recent_payments > 2:
        score += 15
        flags.append("elevated_velocity")

    if data.ip_address and _is_suspicious_ip(data.ip_address):
        score += 40
        flags.append("private_ip")

    if data.user_agent and _is_inconsistent_user_agent(data.user_agent, data.user_history):
        score += 20
        flags.append("user_agent_change")

    return FraudAssessment(score=min(100, max(0, score)), flags=flags)


def calculate_fraud_score(data: FraudCheckInput, now: datetime | None = None) -> int:
    return assess_fraud_risk(data, now).score
