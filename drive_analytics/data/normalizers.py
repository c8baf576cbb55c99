"""
Canonicalisation of operator, technology and band names.

Drive-test handsets report the registered network in many spellings
(PLMN codes, localized brand names, marketing strings). These functions
map them to the fixed vocabulary used by the dashboards.
"""
import re
from typing import Optional

UNKNOWN = "Unknown"

# Values some handsets report when not registered on any network
INVALID_PROVIDER_VALUES = {"000 000", "404440", "404011"}

INVALID_TECH_VALUES = {
    "000", "00", "Unknown/No Service", "Unknown / No Service",
    "UNKNOWN / NO SERVICE", "Unknown", "undefined", "null", "404440", "404011",
}

# (canonical name, substrings of the cleaned upper-case raw value)
PROVIDER_PATTERNS = [
    ("Jio", ("JIO",)),
    ("Airtel", ("AIRTEL",)),
    ("VI India", ("VIINDIA", "VODAFONE", "IDEA")),
    ("Yas", ("YAS",)),
    ("BSNL", ("BSNL",)),
    ("Far Eastone", ("FAREASTONE", "EASTONE", "遠傳電信")),
    ("TW Mobile", ("TWMOBILE", "TAIWANMOBILE", "台灣大哥大")),
    ("Chunghwa Telecom", ("CHUNGHWA", "中華電信")),
    ("APTG", ("APTG", "ASIAPACIFIC", "亞太電信")),
]

# PLMN codes that map to a display label rather than a brand
PROVIDER_CODES = {"466001": "(466001)IR"}

NR_BAND_PATTERN = re.compile(r'^n\d+', re.IGNORECASE)


def normalize_provider_name(raw_name) -> Optional[str]:
    """
    Map a raw operator string to a canonical brand name.

    Args:
        raw_name: Operator string as reported by the handset (``m_alpha_long``)

    Returns:
        Canonical brand, the stripped input when no rule matches, or ``None``
        for empty and placeholder values.

    Example:
        >>> normalize_provider_name("IND airtel")
        'Airtel'
        >>> normalize_provider_name("Vodafone IN")
        'VI India'
        >>> normalize_provider_name("//////") is None
        True
    """
    if raw_name is None:
        return None

    s = str(raw_name).strip()
    if not s or re.fullmatch(r'/+', s) or s in INVALID_PROVIDER_VALUES:
        return None

    cleaned = re.sub(r'[\s\-_]', '', s.upper())

    if cleaned in PROVIDER_CODES:
        return PROVIDER_CODES[cleaned]
    if cleaned == "VI":
        return "VI India"

    for canonical, needles in PROVIDER_PATTERNS:
        if any(needle in cleaned for needle in needles):
            return canonical

    return s


def normalize_tech_name(tech, band=None) -> str:
    """
    Map a raw network type to ``5G``, ``4G``, ``3G``, ``2G`` or ``Unknown``.

    An NR band (``n78``) forces ``5G`` regardless of the reported type,
    since NSA handsets often report ``LTE`` while anchored on NR.

    Example:
        >>> normalize_tech_name("LTE")
        '4G'
        >>> normalize_tech_name("LTE", band="n78")
        '5G'
        >>> normalize_tech_name("HSPA+")
        '3G'
    """
    if band is not None and NR_BAND_PATTERN.match(str(band).strip()):
        return "5G"

    if tech is None:
        return UNKNOWN

    tech_str = str(tech).strip()
    if not tech_str or tech_str in INVALID_TECH_VALUES:
        return UNKNOWN

    t = tech_str.upper()

    if "5G" in t or "NR" in t or "NSA" in t or "SA" in t:
        return "5G"
    if "LTE" in t or "4G" in t:
        return "4G"
    if any(k in t for k in ("3G", "WCDMA", "UMTS", "HSPA")):
        return "3G"
    if any(k in t for k in ("2G", "EDGE", "GSM", "GPRS")):
        return "2G"

    return tech_str


def normalize_band_name(band) -> str:
    """
    Prefix bare LTE band numbers with ``B``; keep ``B*`` and ``n*`` as is.

    Example:
        >>> normalize_band_name(3)
        'B3'
        >>> normalize_band_name("n78")
        'n78'
        >>> normalize_band_name("-1")
        'Unknown'
    """
    if band is None:
        return UNKNOWN

    band_str = str(band).strip()
    if band_str in ("", "-1", UNKNOWN):
        return UNKNOWN
    if band_str[0] in ("B", "n"):
        return band_str
    return "B" + band_str


def canonical_operator_name(raw) -> str:
    """
    Looser operator mapping used by the analytics endpoints.

    Strips the ``IND`` country prefix and never returns ``None``.

    Example:
        >>> canonical_operator_name("IND-JIO 4G")
        'JIO'
    """
    if raw is None or raw == "":
        return UNKNOWN
    s = re.sub(r'^IND[-\s]*', '', str(raw).strip(), flags=re.IGNORECASE)
    lower = s.lower()
    if lower in ("//////", "404011", ""):
        return UNKNOWN
    if "jio" in lower:
        return "JIO"
    if "airtel" in lower:
        return "Airtel"
    if "vodafone" in lower or lower.startswith("vi"):
        return "Vi (Vodafone Idea)"
    if "bsnl" in lower:
        return "BSNL"
    return s
