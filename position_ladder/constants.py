"""
System-wide constants for the position ladder service.

Centralizes magic numbers and venue endpoints used across modules.
"""
from decimal import Decimal

# API Configuration
BITUNIX_BASE_URL = "https://fapi.bitunix.com"
BITUNIX_WS_URL = "wss://fapi.bitunix.com/public/"

# API Endpoints
PENDING_POSITIONS_ENDPOINT = "/api/v1/futures/position/get_pending_positions"
HISTORY_POSITIONS_ENDPOINT = "/api/v1/futures/position/get_history_positions"
PENDING_ORDERS_ENDPOINT = "/api/v1/futures/trade/get_pending_orders"
PLACE_ORDER_ENDPOINT = "/api/v1/futures/trade/place_order"
CANCEL_ORDERS_ENDPOINT = "/api/v1/futures/trade/cancel_orders"
PLACE_TPSL_ENDPOINT = "/api/v1/futures/tpsl/place_order"
CHANGE_LEVERAGE_ENDPOINT = "/api/v1/futures/account/change_leverage"

# Rate Limiting
PRIVATE_API_CAPACITY = 10
PRIVATE_API_REFILL_RATE = 5.0  # requests per second

# Timeouts
DEFAULT_API_TIMEOUT = 15  # seconds
HISTORY_PAGE_SIZE = 100

# Ladder
DEFAULT_ALLOCATION_PCT = [30, 30, 20, 10, 5, 5]
TP_PRICE_OFFSET_PCT = Decimal("0.001")
CLOSE_QTY_EPSILON = Decimal("0.001")
MIN_FILL_QTY = Decimal("0.0001")
QTY_DECIMALS = 6

# Live position quantity fields, in order of preference
POSITION_QTY_FIELDS = ("qty", "positionQty", "holdQty", "positionAmt", "availQty", "positionSize")

# Venue messages that mean "already there" during ladder submission
EXPECTED_REJECTION_MARKERS = (
    "duplicate",
    "already exist",
    "exceed",
    "limit reached",
    "too many",
)

# Manual close pacing
CLOSE_ALL_DELAY_SECONDS = 0.3

# Close attribution sources
CLOSE_SOURCE_TP = "price_monitor_tp"
CLOSE_SOURCE_SL = "price_monitor_sl"
CLOSE_SOURCE_MANUAL = "manual"
CLOSE_SOURCE_UNKNOWN = "manual_or_liquidated"
