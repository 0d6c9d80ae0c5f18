from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# Portable column types: JSONB and BIGSERIAL on PostgreSQL, plain JSON and
# rowid-backed INTEGER keys on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


# ============================================================================
# ENUMS
# ============================================================================

class SourceType(str, enum.Enum):
    """Data source types"""
    API = "api"
    BROWSER = "browser"
    DATABASE = "database"


class ETLStatus(str, enum.Enum):
    """Pipeline run status"""
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


class ImageType(str, enum.Enum):
    """Role of a product image"""
    MAIN = "main"
    FEATURE = "feature"


class TrackingStatus(enum.IntEnum):
    """Shipment status codes shared with the order system"""
    NOT_FOUND = 0
    IN_TRANSIT = 1
    DELIVERED = 2
    UNDELIVERED = 3
    PICK_UP = 4


class TrackingRegion(enum.IntEnum):
    """Which leg of the shipment a tracking event belongs to"""
    ORIGIN = 1
    DESTINATION = 2
