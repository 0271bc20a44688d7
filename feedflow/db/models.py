"""
Table definitions for imported entities, operation tracking, mapping templates
and saved export templates.

Tables are declared with SQLAlchemy Core so the same DDL runs on Postgres and
on the SQLite engines used in tests. Data access elsewhere goes through
``text()`` statements against these tables.
"""
import hashlib
import logging
import threading
from typing import Union
from pathlib import Path

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()

PRODUCTS_TABLE = "products"
MARKET_DATA_TABLE = "market_data"
FILE_OPERATIONS_TABLE = "file_operations"
FIELD_MAPPINGS_TABLE = "field_mappings"
FIELD_MAPPING_DETAILS_TABLE = "field_mapping_details"
EXPORT_TEMPLATES_TABLE = "export_templates"

HASH_READ_BLOCK = 1024 * 1024


products = Table(
    PRODUCTS_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=True),
    Column("product_id", String(255)),
    Column("product_name", String(400)),
    Column("product_brand", String(255)),
    Column("product_bar", String(255)),
    Column("product_description", Text),
    Column("product_url", String(1100)),
    Column("product_category1", String(255)),
    Column("product_category2", String(255)),
    Column("product_category3", String(255)),
    Column("product_price", Float),
    Column("product_analog", String(255)),
    Column("product_additional1", String(255)),
    Column("product_additional2", String(255)),
    Column("product_additional3", String(255)),
    Column("product_additional4", String(255)),
    Column("product_additional5", String(255)),
    Column("file_operation_id", String(36)),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    Index("idx_products_client_external", "client_id", "product_id"),
)

# Competitor and region rows share one table; a row carries either or both.
market_data = Table(
    MARKET_DATA_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=True),
    Column("product_ref", Integer, ForeignKey(f"{PRODUCTS_TABLE}.id", ondelete="CASCADE"), nullable=True),
    Column("product_id", String(255)),
    Column("region", String(255)),
    Column("region_address", String(400)),
    Column("competitor_name", String(400)),
    Column("competitor_price", String(255)),
    Column("competitor_promotional_price", String(255)),
    Column("competitor_time", String(100)),
    Column("competitor_date", String(100)),
    Column("competitor_local_date_time", DateTime),
    Column("competitor_stock_status", String(255)),
    Column("competitor_additional_price", String(255)),
    Column("competitor_commentary", Text),
    Column("competitor_product_name", String(400)),
    Column("competitor_additional", String(255)),
    Column("competitor_additional2", String(255)),
    Column("competitor_url", String(1100)),
    Column("competitor_web_cache_url", String(1100)),
    Column("file_operation_id", String(36)),
    Column("created_at", DateTime, server_default=func.now()),
    Index("idx_market_data_product_ref", "product_ref"),
    Index("idx_market_data_client_external", "client_id", "product_id"),
)

file_operations = Table(
    FILE_OPERATIONS_TABLE,
    metadata,
    Column("id", String(36), primary_key=True),
    Column("client_id", Integer, nullable=True),
    Column("kind", String(20), nullable=False),
    Column("status", String(20), nullable=False),
    Column("entity_type", String(50)),
    Column("file_name", String(500)),
    Column("file_type", String(20)),
    Column("file_hash", String(64)),
    Column("file_size", Integer),
    Column("field_mapping_id", Integer, nullable=True),
    Column("stages", Text),
    Column("processed_records", Integer, default=0),
    Column("total_records", Integer, nullable=True),
    Column("processing_progress", Integer, default=0),
    Column("saved_records", Integer, default=0),
    Column("updated_records", Integer, default=0),
    Column("skipped_records", Integer, default=0),
    Column("failed_records", Integer, default=0),
    Column("error_message", Text),
    Column("error_samples", Text),
    Column("params", Text),
    Column("result_path", String(1000)),
    Column("started_at", DateTime),
    Column("completed_at", DateTime),
    Index("idx_file_operations_status", "status"),
)

field_mappings = Table(
    FIELD_MAPPINGS_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("entity_type", String(50), nullable=False),
    Column("client_id", Integer, nullable=True),
    Column("is_active", Boolean, default=True, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
)

field_mapping_details = Table(
    FIELD_MAPPING_DETAILS_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("field_mapping_id", Integer, ForeignKey(f"{FIELD_MAPPINGS_TABLE}.id", ondelete="CASCADE"), nullable=False),
    Column("source_field", String(255), nullable=False),
    Column("target_field", String(255), nullable=False),
    Column("required", Boolean, default=False, nullable=False),
    Column("transformation_type", String(50)),
    Column("transformation_params", String(500)),
    Column("order_index", Integer, default=0),
)

# Columns, labels, writer options and strategy params are stored as JSON text.
export_templates = Table(
    EXPORT_TEMPLATES_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", String(1000)),
    Column("client_id", Integer, nullable=True),
    Column("entity_type", String(50), nullable=False),
    Column("strategy", String(50), nullable=False, default="simple"),
    Column("strategy_params", Text),
    Column("fields", Text, nullable=False),
    Column("options", Text, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
    Index("idx_export_templates_client_entity", "client_id", "entity_type"),
)

_create_lock = threading.Lock()


def create_tables(engine: Engine) -> None:
    """Create every feedflow table that does not exist yet."""
    with _create_lock:
        metadata.create_all(engine, checkfirst=True)
        logger.info("Feedflow tables ready on %s", engine.url.render_as_string(hide_password=True))


def calculate_file_hash(source: Union[bytes, str, Path]) -> str:
    """Calculate the SHA-256 hash of raw bytes or of a file on disk."""
    if isinstance(source, bytes):
        return hashlib.sha256(source).hexdigest()

    digest = hashlib.sha256()
    with open(source, "rb") as handle:
        for block in iter(lambda: handle.read(HASH_READ_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()
