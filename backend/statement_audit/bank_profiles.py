"""
Bank profile registry.

Per-institution parsing heuristics loaded from a declarative YAML table:
ordered date formats, categorisation rules, known extraction errors,
structural markers and OCR character confusions. Lookups are deterministic
and order-sensitive; registration order is the tie-break for detection.
"""
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Tuple

import structlog
import yaml

from backend.exceptions import ProfileLoadError, UnknownProfileError
from backend.statement_audit.models import (
    BankProfile,
    CategoryRule,
    KnownErrorCorrection,
    StructuralMarkers,
    TransactionType,
    is_canonical_date,
    utcnow,
)

logger = structlog.get_logger(__name__)

DEFAULT_PROFILES_PATH = Path(__file__).parent.parent / "data" / "bank_profiles.yaml"

OTHER_INSTITUTION_ID = "other"

# First match wins, so specific rails (wire, ACH, ATM) sit above generic words.
TRANSACTION_TYPE_KEYWORDS: List[Tuple[TransactionType, Pattern]] = [
    (TransactionType.WIRE, re.compile(r"\bwire\b", re.IGNORECASE)),
    (TransactionType.ACH, re.compile(r"\bach\b|\bppd\b|\bccd\b", re.IGNORECASE)),
    (TransactionType.ATM, re.compile(r"\batm\b", re.IGNORECASE)),
    (TransactionType.CHECK, re.compile(r"\bcheck\b|\bchk\b|\bcheque\b", re.IGNORECASE)),
    (TransactionType.FEE, re.compile(r"\bfee\b|service charge|\boverdraft\b|\bnsf\b", re.IGNORECASE)),
    (TransactionType.INTEREST, re.compile(r"\binterest\b|\bdividend\b", re.IGNORECASE)),
    (TransactionType.REFUND, re.compile(r"\brefund\b|\breversal\b|\breturned?\b", re.IGNORECASE)),
    (TransactionType.POS, re.compile(r"\bpos\b|\bpurchase\b|\bcheckcard\b|debit card", re.IGNORECASE)),
    (TransactionType.TRANSFER, re.compile(r"\btransfer\b|\bxfer\b|\bzelle\b|\bvenmo\b", re.IGNORECASE)),
    (TransactionType.PAYMENT, re.compile(r"\bpayment\b|\bpymt\b|\bautopay\b|\bbill pay\b", re.IGNORECASE)),
    (TransactionType.DEPOSIT, re.compile(r"\bdeposit\b|\bpayroll\b|\bdirect dep\b", re.IGNORECASE)),
    (TransactionType.WITHDRAWAL, re.compile(r"\bwithdrawal\b|\bwd\b", re.IGNORECASE)),
    (TransactionType.ADJUSTMENT, re.compile(r"\badjustment\b|\bcorrection\b", re.IGNORECASE)),
]


def infer_transaction_type(description: Optional[str]) -> TransactionType:
    """
    Infer a coarse transaction type from a description.

    Args:
        description: Transaction description text.

    Returns:
        First matching type in keyword-table order, or OTHER.
    """
    if not description:
        return TransactionType.OTHER
    for txn_type, regex in TRANSACTION_TYPE_KEYWORDS:
        if regex.search(description):
            return txn_type
    return TransactionType.OTHER


class BankProfileRegistry:
    """
    Registry of bank profiles keyed by institution id.

    Primary profiles are detectable and keep their file order. Regional
    profiles refine categorisation but detection reports them as "other".
    """

    def __init__(self, profiles_path: Optional[Path] = None):
        """
        Initialize the registry.

        Args:
            profiles_path: Path to the profile YAML table. Falls back to the
                configured override, then the bundled table.
        """
        self._profiles: Dict[str, BankProfile] = {}
        self._regional: Dict[str, BankProfile] = {}
        self._confusions: Dict[str, List[Tuple[Pattern, str]]] = {}
        self._structural: Dict[str, List[Pattern]] = {}

        if profiles_path is None:
            from backend.config import get_settings

            profiles_path = get_settings().bank_profiles_path or DEFAULT_PROFILES_PATH

        self._load_profiles(Path(profiles_path))

    def _load_profiles(self, path: Path) -> None:
        """
        Load profiles from a YAML file.

        Args:
            path: Path to the profile table.

        Raises:
            ProfileLoadError: File missing, unreadable or malformed.
        """
        logger.info("Loading bank profiles", path=str(path))

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load bank profiles", path=str(path), error=str(e))
            raise ProfileLoadError(str(path), str(e))

        if not isinstance(data, dict):
            raise ProfileLoadError(str(path), "profile table must be a mapping")

        try:
            for entry in data.get("profiles") or []:
                profile = self._build_profile(entry, regional=False)
                self._profiles[profile.id] = profile
            for entry in data.get("regional") or []:
                profile = self._build_profile(entry, regional=True)
                self._regional[profile.id] = profile
        except (KeyError, TypeError, re.error) as e:
            logger.error("Invalid bank profile entry", path=str(path), error=str(e))
            raise ProfileLoadError(str(path), f"invalid profile entry: {e}")

        if OTHER_INSTITUTION_ID not in self._profiles:
            raise ProfileLoadError(str(path), "the 'other' fallback profile is required")

        logger.info(
            "Bank profiles loaded",
            primary=len(self._profiles),
            regional=len(self._regional),
        )

    def _build_profile(self, entry: Dict[str, Any], regional: bool) -> BankProfile:
        markers = entry.get("markers") or {}
        profile = BankProfile(
            id=entry["id"],
            name=entry.get("name", entry["id"]),
            aliases=list(entry.get("aliases") or []),
            date_formats=list(entry.get("date_formats") or []),
            category_rules=[
                CategoryRule(
                    pattern=rule["pattern"],
                    category=rule["category"],
                    direction=rule.get("direction"),
                )
                for rule in entry.get("category_rules") or []
            ],
            known_errors=[
                KnownErrorCorrection(find=fix["find"], replace=fix["replace"])
                for fix in entry.get("known_errors") or []
            ],
            markers=StructuralMarkers(
                header=list(markers.get("header") or []),
                footer=list(markers.get("footer") or []),
                page_break=list(markers.get("page_break") or []),
            ),
            ocr_confusions={
                str(k): str(v) for k, v in (entry.get("ocr_confusions") or {}).items()
            },
            regional=regional,
        )

        # A confusion only applies between two digits
        self._confusions[profile.id] = [
            (re.compile(rf"(?<=\d){re.escape(char)}(?=\d)"), replacement)
            for char, replacement in profile.ocr_confusions.items()
        ]
        self._structural[profile.id] = [
            re.compile(marker, re.IGNORECASE)
            for marker in profile.markers.footer + profile.markers.page_break
        ]
        return profile

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_profile(self, institution_id: Optional[str]) -> BankProfile:
        """
        Get a profile by institution id.

        Args:
            institution_id: Institution id (primary or regional).

        Returns:
            The registered profile, or the "other" fallback.
        """
        if institution_id:
            profile = self._profiles.get(institution_id) or self._regional.get(institution_id)
            if profile is not None:
                return profile
        return self._profiles[OTHER_INSTITUTION_ID]

    def require_profile(self, institution_id: str) -> BankProfile:
        """
        Strict variant of get_profile.

        Raises:
            UnknownProfileError: No profile registered under the id.
        """
        profile = self._profiles.get(institution_id) or self._regional.get(institution_id)
        if profile is None:
            raise UnknownProfileError(institution_id)
        return profile

    def list_profiles(self) -> List[BankProfile]:
        """Primary profiles in registration order."""
        return list(self._profiles.values())

    def list_regional_profiles(self) -> List[BankProfile]:
        return list(self._regional.values())

    def has_profile(self, institution_id: str) -> bool:
        return institution_id in self._profiles or institution_id in self._regional

    # ------------------------------------------------------------------
    # Detection and matching
    # ------------------------------------------------------------------

    def detect_from_content(self, raw_text: Optional[str]) -> Optional[str]:
        """
        Detect the issuing institution from raw statement text.

        Primary profiles are scanned in registration order and the first
        header marker found (case-insensitive substring) wins. A regional
        match reports the "other" institution.

        Args:
            raw_text: Raw text of the statement.

        Returns:
            Institution id, or None when nothing matched.
        """
        if not raw_text:
            return None

        haystack = raw_text.lower()

        for profile in self._profiles.values():
            if any(marker.lower() in haystack for marker in profile.markers.header):
                logger.debug("Institution detected", institution_id=profile.id)
                return profile.id

        for profile in self._regional.values():
            if any(marker.lower() in haystack for marker in profile.markers.header):
                logger.debug("Regional institution detected", regional_id=profile.id)
                return OTHER_INSTITUTION_ID

        return None

    def categorize_transaction(
        self, description: Optional[str], institution_id: Optional[str]
    ) -> Optional[str]:
        """
        Categorise a transaction description.

        The institution's own rules are tried first, then the "other"
        profile's rules. First matching rule wins.

        Args:
            description: Transaction description.
            institution_id: Institution id.

        Returns:
            Category label, or None.
        """
        if not description:
            return None

        profile = self.get_profile(institution_id)
        for rule in profile.category_rules:
            if rule.matches(description):
                return rule.category

        if profile.id != OTHER_INSTITUTION_ID:
            for rule in self._profiles[OTHER_INSTITUTION_ID].category_rules:
                if rule.matches(description):
                    return rule.category

        return None

    def apply_known_error_corrections(
        self, text: Optional[str], institution_id: Optional[str]
    ) -> Optional[str]:
        """
        Repair known extraction errors in a piece of text.

        Literal substitutions run first, in table order. OCR character
        confusions are then applied only where the character sits between
        two digits, so alphabetic text is left alone.

        Args:
            text: Extracted text.
            institution_id: Institution id.

        Returns:
            Corrected text.
        """
        if not text:
            return text

        profile = self.get_profile(institution_id)
        for fix in profile.known_errors:
            text = text.replace(fix.find, fix.replace)

        for regex, replacement in self._confusions.get(profile.id, []):
            text = regex.sub(replacement, text)

        return text

    def normalize_date(
        self,
        raw: Optional[str],
        institution_id: Optional[str],
        reference_year: Optional[int] = None,
    ) -> Optional[str]:
        """
        Normalise a statement date to YYYY-MM-DD.

        Args:
            raw: Date as printed on the statement.
            institution_id: Institution id whose formats are tried in order.
            reference_year: Year used for formats that omit it.

        Returns:
            Canonical date string, or None when no format matched.
        """
        if not raw:
            return None

        value = raw.strip()
        if is_canonical_date(value):
            return value

        year = reference_year or utcnow().year
        profile = self.get_profile(institution_id)
        formats = list(profile.date_formats)
        if profile.id != OTHER_INSTITUTION_ID:
            formats += [
                fmt for fmt in self._profiles[OTHER_INSTITUTION_ID].date_formats
                if fmt not in formats
            ]

        for fmt in formats:
            has_year = "%Y" in fmt or "%y" in fmt
            try:
                if has_year:
                    parsed = datetime.strptime(value, fmt)
                else:
                    parsed = datetime.strptime(f"{value} {year}", f"{fmt} %Y")
            except ValueError:
                continue
            return parsed.strftime("%Y-%m-%d")

        logger.debug("Unrecognised date format", raw=raw, institution_id=profile.id)
        return None

    def strip_structural_lines(self, text: Optional[str], institution_id: Optional[str]) -> str:
        """
        Remove footer and page-break lines from raw statement text.

        Args:
            text: Raw statement text.
            institution_id: Institution id.

        Returns:
            Text without structural lines.
        """
        if not text:
            return ""

        profile = self.get_profile(institution_id)
        patterns = self._structural.get(profile.id, [])
        kept = [
            line for line in text.splitlines()
            if not any(p.search(line) for p in patterns)
        ]
        return "\n".join(kept)


# Singleton instance
_registry_instance: Optional[BankProfileRegistry] = None


def get_bank_profile_registry() -> BankProfileRegistry:
    """Get singleton registry instance."""
    global _registry_instance
    if _registry_instance is None:
        _registry_instance = BankProfileRegistry()
    return _registry_instance
