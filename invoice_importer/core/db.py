"""DB engine, session factory and ORM models for the Invoice Importer."""

from decimal import Decimal
from functools import lru_cache

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from invoice_importer.core.models import ImportStatus
from invoice_importer.core.utils import utcnow

Base = declarative_base()


class CreditCard(Base):
    """A credit card owned by a user; maintained outside the import pipeline."""

    __tablename__ = "credit_cards"
    id = Column(Integer, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    last_four_digits = Column(String(4), nullable=True)


class InvoiceItem(Base):
    """A persisted line item of a monthly invoice."""

    __tablename__ = "invoice_items"
    id = Column(Integer, primary_key=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    description = Column(String(500), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    purchase_date = Column(Date, nullable=False)
    installments = Column(Integer, nullable=False, default=1)
    total_installments = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    invoice = relationship("Invoice", back_populates="items")


class Invoice(Base):
    """Monthly invoice of a credit card; one per card and month."""

    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("credit_card_id", "month", name="uq_invoice_card_month"),)
    id = Column(Integer, primary_key=True)
    credit_card_id = Column(Integer, ForeignKey("credit_cards.id"), nullable=False)
    month = Column(String(7), nullable=False)
    due_date = Column(Date, nullable=False)
    total_amount = Column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    credit_card = relationship("CreditCard")
    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.id",
        lazy="selectin",
    )

    def add_item(self, item: InvoiceItem) -> None:
        """Append an item and recalculate the invoice total."""
        self.items.append(item)
        self.total_amount = sum((Decimal(i.amount) for i in self.items), Decimal("0.00"))
        self.updated_at = utcnow()


class InvoiceImport(Base):
    """An import job: one uploaded statement and what became of it."""

    __tablename__ = "invoice_imports"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    credit_card_id = Column(Integer, ForeignKey("credit_cards.id"), nullable=False)
    status = Column(String(20), nullable=False, default=ImportStatus.PENDING.value)
    source = Column(String(20), nullable=False)
    original_file_name = Column(String(500), nullable=False)
    file_path = Column(String(1000), nullable=False)
    parsed_data = Column(Text, nullable=True)
    error_message = Column(String(1000), nullable=True)
    imported_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    # Many imports may point at the same invoice.
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True, index=True)
    total_amount = Column(Numeric(15, 2), nullable=True)
    due_date = Column(Date, nullable=True)
    bank_name = Column(String(100), nullable=True)
    card_last_four_digits = Column(String(20), nullable=True)

    credit_card = relationship("CreditCard")
    invoice = relationship("Invoice")


def get_engine(url: str | None = None) -> Engine:
    """Create a SQLAlchemy engine using the configured database URL."""
    if url is None:
        from invoice_importer.core.settings import get_settings

        url = get_settings().database_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Build a session factory bound to ``engine``."""
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@lru_cache
def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory for the configured database."""
    return create_session_factory(get_engine())


def init_db(engine: Engine) -> None:
    """Create every table that does not exist yet."""
    Base.metadata.create_all(engine)
