"""
Client for the WHO ICD-11 terminology API plus the local heuristics derived
from code structure (complexity and chapter).
"""
from dataclasses import asdict, dataclass
from typing import Any

import httpx
import structlog

from shared.config import settings

logger = structlog.get_logger(__name__)

ICD11_HEADERS = {
    "Accept": "application/json",
    "API-Version": "v2",
    "Accept-Language": "en",
}

CHAPTER_MAP = {
    "A": "Infectious diseases",
    "B": "Infectious diseases",
    "C": "Neoplasms",
    "D": "Blood disorders",
    "E": "Endocrine disorders",
    "F": "Mental disorders",
    "G": "Nervous system",
    "H": "Eye and ear",
    "I": "Circulatory system",
    "J": "Respiratory system",
    "K": "Digestive system",
    "L": "Skin disorders",
    "M": "Musculoskeletal",
    "N": "Genitourinary",
    "O": "Pregnancy/Childbirth",
    "P": "Perinatal conditions",
    "Q": "Congenital anomalies",
    "R": "Symptoms/Signs",
    "S": "Injury/Poisoning",
    "T": "External causes",
    "U": "Special purposes",
    "V": "Health status",
    "W": "Health services",
    "X": "Extension codes",
    "Y": "Extension codes",
    "Z": "Extension codes",
}


class ICD11Error(Exception):
    pass


@dataclass
class ICD11Category:
    id: str
    code: str
    title: str
    description: str = ""
    parent_id: str | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


COMMON_ICD11_CODES = {
    "CA00": ICD11Category(
        id="CA00",
        code="CA00",
        title="Malignant neoplasms",
        description="Neoplasms of uncertain or unknown behaviour",
    ),
    "BA00": ICD11Category(
        id="BA00",
        code="BA00",
        title="Acute nasopharyngitis",
        description="Common cold",
    ),
    "DA00": ICD11Category(
        id="DA00",
        code="DA00",
        title="Iron deficiency anaemia",
        description="Anaemia due to iron deficiency",
    ),
}


def get_complexity_score(code: str | None) -> float:
    """Longer codes are more specific: chapter 1.0, block 2.0, category 3.0,
    subcategory 4.0. No code means medium complexity."""
    if not code:
        return 2.0
    length = len(code)
    if length <= 3:
        return 1.0
    if length <= 5:
        return 2.0
    if length <= 7:
        return 3.0
    return 4.0


def get_service_category(code: str) -> str:
    return CHAPTER_MAP.get(code[:1].upper(), "General healthcare")


def _text(value: Any) -> str:
    # The WHO API wraps localized strings as {"@language": ..., "@value": ...}
    if isinstance(value, dict):
        return value.get("@value", "")
    return value or ""


def _to_category(entity: dict[str, Any]) -> ICD11Category:
    definition = entity.get("definition")
    if isinstance(definition, list):
        definition = definition[0] if definition else None
    parent = entity.get("parent")
    if isinstance(parent, list):
        parent = parent[0] if parent else None

    return ICD11Category(
        id=str(entity.get("id", "")),
        code=entity.get("code") or entity.get("theCode") or "",
        title=_text(entity.get("title")),
        description=_text(definition),
        parent_id=parent,
        is_active=entity.get("active", True),
    )


class ICD11Client:
    def __init__(
        self,
        base_url: str = settings.ICD11_BASE_URL,
        timeout: float = settings.ICD11_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=ICD11_HEADERS, transport=self.transport)

    async def search_codes(self, query: str, limit: int = 20) -> list[ICD11Category]:
        params = {
            "q": query,
            "limit": str(limit),
            "useFlexisearch": "true",
            "flatResults": "true",
        }
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/search", params=params)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("icd11_search_failed", query=query, error=str(e))
            raise ICD11Error("Failed to search ICD-11 codes") from e

        return [_to_category(entity) for entity in data.get("destinationEntities") or []]

    async def get_category_by_code(self, code: str) -> ICD11Category | None:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/{code}")
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("icd11_fetch_failed", code=code, error=str(e))
            raise ICD11Error("Failed to fetch ICD-11 category") from e

        return _to_category(data)

    async def validate_code(self, code: str) -> bool:
        try:
            category = await self.get_category_by_code(code)
        except ICD11Error:
            return False
        return category is not None and category.is_active
