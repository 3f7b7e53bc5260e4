# conftest.py
import enum
import logging
from typing import List

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from attrsql.attributes import AttributeRegistry, AttributeSpec, Cardinality, ValueType
from attrsql.connection import ConnectionPools, Environment


# Custom test markers
def pytest_configure(config):
    """Configure custom markers."""
    markers = [
        "db: marks tests that need the sqlite database",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)


class ItemStatus(enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"


def sample_attributes() -> List[AttributeSpec]:
    """
    Sample schema used across the suite:

    account (uuid) 1-* item (long) 1-* line-item (int)
    category (int) self-reference through parent/children
    document (uuid) 1-1 metadata (uuid), delete-orphan
    order (int) *-* tag (int) through order-tag (int)
    """
    ref, many = ValueType.REF, Cardinality.MANY
    return [
        # account
        AttributeSpec(key="account/id", type=ValueType.UUID, identity=True, table="account"),
        AttributeSpec(key="account/name", type=ValueType.STRING, identities={"account/id"}, max_length=100),
        AttributeSpec(key="account/items", type=ref, cardinality=many, target="item/id",
                      identities={"account/id"}, fk_owner_of="item/account", order_by="item/name"),
        # item
        AttributeSpec(key="item/id", type=ValueType.LONG, identity=True, table="item"),
        AttributeSpec(key="item/name", type=ValueType.STRING, identities={"item/id"}, max_length=50),
        AttributeSpec(key="item/price", type=ValueType.DECIMAL, identities={"item/id"}),
        AttributeSpec(key="item/active", type=ValueType.BOOLEAN, identities={"item/id"}),
        AttributeSpec(key="item/created-at", type=ValueType.INSTANT, identities={"item/id"}),
        AttributeSpec(key="item/status", type=ValueType.ENUM, identities={"item/id"},
                      storage_to_model=ItemStatus),
        AttributeSpec(key="item/account", type=ref, target="account/id", identities={"item/id"},
                      column_name="account_id"),
        AttributeSpec(key="item/line-items", type=ref, cardinality=many, target="line-item/id",
                      identities={"item/id"}, fk_owner_of="line-item/item", order_by="line-item/position"),
        # line-item
        AttributeSpec(key="line-item/id", type=ValueType.INT, identity=True, table="line_item"),
        AttributeSpec(key="line-item/qty", type=ValueType.INT, identities={"line-item/id"}),
        AttributeSpec(key="line-item/position", type=ValueType.INT, identities={"line-item/id"}),
        AttributeSpec(key="line-item/item", type=ref, target="item/id", identities={"line-item/id"},
                      column_name="item_id"),
        # category
        AttributeSpec(key="category/id", type=ValueType.INT, identity=True, table="category"),
        AttributeSpec(key="category/name", type=ValueType.STRING, identities={"category/id"}),
        AttributeSpec(key="category/parent", type=ref, target="category/id", identities={"category/id"},
                      column_name="parent_id"),
        AttributeSpec(key="category/children", type=ref, cardinality=many, target="category/id",
                      identities={"category/id"}, fk_owner_of="category/parent", order_by="category/name"),
        # document
        AttributeSpec(key="document/id", type=ValueType.UUID, identity=True, table="document"),
        AttributeSpec(key="document/title", type=ValueType.STRING, identities={"document/id"}),
        AttributeSpec(key="document/metadata", type=ref, target="metadata/id", identities={"document/id"},
                      fk_owner_of="metadata/document", delete_orphan=True),
        AttributeSpec(key="metadata/id", type=ValueType.UUID, identity=True, table="metadata"),
        AttributeSpec(key="metadata/text", type=ValueType.STRING, identities={"metadata/id"}),
        AttributeSpec(key="metadata/document", type=ref, target="document/id", identities={"metadata/id"},
                      column_name="document_id"),
        # order / tag
        AttributeSpec(key="order/id", type=ValueType.INT, identity=True, table="orders"),
        AttributeSpec(key="order/number", type=ValueType.STRING, identities={"order/id"}),
        AttributeSpec(key="order/order-tags", type=ref, cardinality=many, target="order-tag/id",
                      identities={"order/id"}, fk_owner_of="order-tag/order", delete_orphan=True),
        AttributeSpec(key="order-tag/id", type=ValueType.INT, identity=True, table="order_tag"),
        AttributeSpec(key="order-tag/order", type=ref, target="order/id", identities={"order-tag/id"},
                      column_name="order_id"),
        AttributeSpec(key="order-tag/tag", type=ref, target="tag/id", identities={"order-tag/id"},
                      column_name="tag_id"),
        AttributeSpec(key="tag/id", type=ValueType.INT, identity=True, table="tag"),
        AttributeSpec(key="tag/name", type=ValueType.STRING, identities={"tag/id"}),
    ]


def sample_metadata() -> sa.MetaData:
    metadata = sa.MetaData()
    sa.Table("account", metadata,
             sa.Column("id", sa.Uuid(), primary_key=True),
             sa.Column("name", sa.String(100)))
    sa.Table("item", metadata,
             sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
             sa.Column("name", sa.String(50)),
             sa.Column("price", sa.Numeric(10, 2)),
             sa.Column("active", sa.Boolean()),
             sa.Column("created_at", sa.DateTime(timezone=True)),
             sa.Column("status", sa.String(255)),
             sa.Column("account_id", sa.Uuid(), sa.ForeignKey("account.id")))
    sa.Table("line_item", metadata,
             sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
             sa.Column("qty", sa.Integer()),
             sa.Column("position", sa.Integer()),
             sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("item.id")))
    sa.Table("category", metadata,
             sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
             sa.Column("name", sa.Text()),
             sa.Column("parent_id", sa.Integer(), sa.ForeignKey("category.id")))
    sa.Table("document", metadata,
             sa.Column("id", sa.Uuid(), primary_key=True),
             sa.Column("title", sa.Text()))
    sa.Table("metadata", metadata,
             sa.Column("id", sa.Uuid(), primary_key=True),
             sa.Column("text", sa.Text()),
             sa.Column("document_id", sa.Uuid(), sa.ForeignKey("document.id")))
    sa.Table("orders", metadata,
             sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
             sa.Column("number", sa.Text()))
    sa.Table("tag", metadata,
             sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
             sa.Column("name", sa.Text()))
    sa.Table("order_tag", metadata,
             sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
             sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id")),
             sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tag.id")))
    return metadata


# Basic fixtures
@pytest.fixture(scope="session")
def registry():
    """Provide the sample attribute registry."""
    return AttributeRegistry(sample_attributes())


@pytest.fixture
def engine():
    """In-memory SQLite database with foreign keys enforced and the sample tables created."""
    engine = sa.create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @sa.event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    sample_metadata().create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def statements(engine):
    """Record every statement sent to the database."""
    recorded: List[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        recorded.append(statement)

    sa.event.listen(engine, "before_cursor_execute", _record)
    yield recorded
    sa.event.remove(engine, "before_cursor_execute", _record)


@pytest.fixture
def pools(engine):
    pools = ConnectionPools({"main": engine}, auto_create={"main": True})
    yield pools


@pytest.fixture
def env(registry, pools):
    return Environment(registry=registry, pools=pools)


@pytest.fixture(autouse=True)
def capture_logs(caplog):
    caplog.set_level(logging.INFO)
