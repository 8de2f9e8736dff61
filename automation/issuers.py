# automation/issuers.py
"""
Static issuer table and built-in recipe lookup.

Issuers are matched by regex against the free-text issuer name on a ticket.
An issuer is "automation supported" when it has a portal entry in AUTOMATIONS;
it has built-in support for an intent when automation/recipes/<id>.json
declares that intent.
"""
import logging
import pathlib
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional, Pattern, Tuple

from db.models import IssuerType

from .errors import RecipeError
from .recipe import Recipe, load_recipe_file

logger = logging.getLogger(__name__)

RECIPES_DIR = pathlib.Path(__file__).with_name("recipes")


@dataclass(frozen=True)
class Issuer:
    id: str
    name: str
    type: IssuerType
    match_patterns: Tuple[Pattern, ...]
    website_url: Optional[str] = None
    region: Optional[str] = None

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.match_patterns)


def _council(id_: str, name: str) -> Issuer:
    return Issuer(
        id=id_,
        name=name,
        type=IssuerType.COUNCIL,
        match_patterns=(re.compile(re.escape(name), re.I),),
        website_url=f"https://{id_}.gov.uk",
        region="London",
    )


LOCAL_AUTHORITIES = (
    _council("lewisham", "Lewisham"),
    _council("lambeth", "Lambeth"),
    _council("camden", "Camden"),
    _council("hackney", "Hackney"),
    _council("islington", "Islington"),
)

PRIVATE_COMPANIES = (
    Issuer("horizon", "Horizon Parking", IssuerType.PRIVATE_COMPANY,
           (re.compile(r"horizon parking", re.I), re.compile(r"horizon", re.I))),
    Issuer("parkingEye", "ParkingEye", IssuerType.PRIVATE_COMPANY,
           (re.compile(r"parking\s*eye", re.I), re.compile(r"parkingeye ltd", re.I))),
)

TRANSPORT_AUTHORITIES = (
    Issuer("tfl", "Transport for London", IssuerType.TFL,
           (re.compile(r"transport for london", re.I), re.compile(r"\btfl\b", re.I))),
)

ISSUERS = LOCAL_AUTHORITIES + PRIVATE_COMPANIES + TRANSPORT_AUTHORITIES

# issuers whose portal we know how to reach
AUTOMATIONS: Dict[str, Dict[str, str]] = {
    "lewisham": {
        "challenge_url": "https://pcnevidence.lewisham.gov.uk/pcnonline/index.php",
        "verify_url": "https://pcnevidence.lewisham.gov.uk/pcnonline/index.php",
    },
    "horizon": {
        "challenge_url": "https://horizonparkingportal.co.uk/#manage",
        "verify_url": "https://horizonparkingportal.co.uk/#manage",
    },
}


def find_issuer(text: Optional[str]) -> Optional[Issuer]:
    if not text:
        return None
    for issuer in ISSUERS:
        if issuer.matches(text):
            return issuer
    return None


def get_issuer(issuer_id: str) -> Optional[Issuer]:
    for issuer in ISSUERS:
        if issuer.id == issuer_id:
            return issuer
    return None


def issuer_slug(text: Optional[str]) -> str:
    """Stable id for an issuer name: the table id when known, else a slug."""
    issuer = find_issuer(text)
    if issuer:
        return issuer.id
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug or "unknown"


def is_automation_supported(issuer_id: str) -> bool:
    return issuer_id in AUTOMATIONS


def _recipe_path(issuer_id: str) -> pathlib.Path:
    return RECIPES_DIR / f"{issuer_id}.json"


@lru_cache(maxsize=None)
def load_built_in_recipe(issuer_id: str) -> Optional[Recipe]:
    """Parsed built-in recipe for an issuer, or None when it has none."""
    path = _recipe_path(issuer_id)
    if not path.exists():
        return None
    recipe = load_recipe_file(path)
    if recipe.issuer_id and recipe.issuer_id != issuer_id:
        raise RecipeError(f"{path.name} declares issuer_id {recipe.issuer_id!r}")
    return recipe


def has_built_in_support(issuer_id: Optional[str], intent: str = "challenge") -> bool:
    if not issuer_id or not is_automation_supported(issuer_id):
        return False
    try:
        recipe = load_built_in_recipe(issuer_id)
    except RecipeError:
        logger.exception("Built-in recipe for %s is invalid", issuer_id)
        return False
    return recipe is not None and recipe.supports(intent)
