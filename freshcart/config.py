"""
Configuration for the FreshCart commerce core.

Values are read from the environment (a local .env file is honoured) and
exposed as module-level constants. Components take these as defaults and
accept explicit overrides in their constructors.
"""

import logging
import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


# =============================================================================
# Language-understanding collaborator
# =============================================================================

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://openrouter.ai/api/v1")
CHAT_MODEL = os.getenv("CHAT_MODEL", "openai/gpt-4o-mini")
LLM_TIMEOUT_SECONDS = _env_float("LLM_TIMEOUT_SECONDS", 30.0)

# =============================================================================
# Storage
# =============================================================================

DATABASE_PATH = os.getenv("DATABASE_PATH", "./db/freshcart.db")
PRODUCTS_PATH = os.getenv("PRODUCTS_PATH", "./data/products.json")

# =============================================================================
# Geocoding (OpenStreetMap Nominatim, no API key)
# =============================================================================

GEOCODER_URL = os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org/search")
GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "FreshCart-WhatsApp-Bot/1.0")
GEOCODER_TIMEOUT_SECONDS = _env_float("GEOCODER_TIMEOUT_SECONDS", 8.0)

# Kisumu town centre
REFERENCE_LAT = -0.0917
REFERENCE_LON = 34.7680
# left,top,right,bottom (lon1,lat1,lon2,lat2), roughly 100km around Kisumu
GEOCODER_VIEWBOX = "33.8,-0.9,35.7,0.7"
GEOCODER_COUNTRY_CODE = "ke"
GEOCODER_CITY_CONTEXT = "Kisumu, Kenya"
GEOCODER_COUNTRY_CONTEXT = "Kenya"
GEOCODER_CANDIDATES = 3

ROAD_DISTANCE_FACTOR = 1.3
MAX_TRUSTED_GEOCODE_KM = 100.0
MAX_STATED_DISTANCE_KM = 200.0

# =============================================================================
# Delivery fee policy
# =============================================================================

TOWN_RADIUS_KM = _env_float("TOWN_RADIUS_KM", 5.0)
NEARBY_RADIUS_KM = _env_float("NEARBY_RADIUS_KM", 15.0)
TOWN_DISTANCE_FEE = 0
NEARBY_FLAT_FEE = _env_int("NEARBY_FLAT_FEE", 100)
FAR_RATE_PER_KM = _env_int("FAR_RATE_PER_KM", 10)
VEG_ONLY_FLAT_FEE = _env_int("VEG_ONLY_FLAT_FEE", 250)
FAR_ZONE_MINIMUM_ORDER = _env_int("FAR_ZONE_MINIMUM_ORDER", 3000)
CURRENCY = "KES"

# =============================================================================
# Recommendations
# =============================================================================

MAX_RECOMMENDATIONS = 3
MIN_RECOMMENDATION_STRENGTH = 2.0
DEFAULT_EDGE_STRENGTH = 1.0
EDGE_INCREMENT = 1.0

# =============================================================================
# Sessions and cart
# =============================================================================

MAX_CART_LINES = 20
MAX_QUANTITY_PER_LINE = 10
MAX_PRODUCT_IMAGES = 5
CONVERSATION_TIMEOUT_MINUTES = _env_int("CONVERSATION_TIMEOUT_MINUTES", 30)
MAX_MESSAGE_HISTORY = _env_int("MAX_MESSAGE_HISTORY", 10)

# =============================================================================
# Orders
# =============================================================================

ORDER_NUMBER_PREFIX = "AFN"
ORDER_NUMBER_MAX_ATTEMPTS = 50
# Orders are delivered the next local day at this hour (Kenya, UTC+3, no DST).
DELIVERY_HOUR = 10
SHOP_UTC_OFFSET_HOURS = 3

# =============================================================================
# Transport
# =============================================================================

WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "https://api.wasender.com/v1")
WHATSAPP_API_KEY = os.getenv("WHATSAPP_API_KEY")
WHATSAPP_INSTANCE_ID = os.getenv("WHATSAPP_INSTANCE_ID")
WHATSAPP_TIMEOUT_SECONDS = 10.0
SEND_MAX_RETRIES = 3
DEDUP_TTL_SECONDS = _env_float("DEDUP_TTL_SECONDS", 60.0)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str = None) -> None:
    """Set up root logging for command-line entry points."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
