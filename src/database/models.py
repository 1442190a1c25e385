"""
Database Models - Billing Star Schema

This module defines the warehouse tables the aggregate engine reads and the
tables it writes its own state into:

Fact Tables:
- FactBilling: Append-only billing ledger, one row per bill

Dimension Tables:
- DimCustomer: Customer attributes (overwritten in place, no history)
- DimMonth: Calendar month attributes

Engine State:
- AggregateSpecRow: Registered aggregate definitions
- MaterializedArtifactRow: Current materialized artifact per spec
- RefreshRecordRow: Refresh bookkeeping per spec
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# DIMENSION TABLES
# =============================================================================

class DimCustomer(Base):
    """
    Customer Dimension Table

    Descriptive customer attributes keyed by a stable customer id.
    Updates overwrite the row in place.
    """
    __tablename__ = "dim_customer"

    customer_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    category: Mapped[Optional[str]] = mapped_column(String(50))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    industry: Mapped[Optional[str]] = mapped_column(String(100))

    bills: Mapped[List["FactBilling"]] = relationship(back_populates="customer")

    __table_args__ = (
        Index("ix_dim_customer_country", "country"),
        Index("ix_dim_customer_category", "category"),
    )


class DimMonth(Base):
    """
    Month Dimension Table

    One row per calendar month (month_id in YYYYMM format).
    """
    __tablename__ = "dim_month"

    month_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    month_name: Mapped[str] = mapped_column(String(20), nullable=False)
    quarter: Mapped[int] = mapped_column(Integer, nullable=False)
    quarter_name: Mapped[str] = mapped_column(String(2), nullable=False)  # Q1..Q4

    bills: Mapped[List["FactBilling"]] = relationship(back_populates="month_dim")

    __table_args__ = (
        Index("ix_dim_month_year_quarter", "year", "quarter"),
    )


# =============================================================================
# FACT TABLES
# =============================================================================

class FactBilling(Base):
    """
    Billing Fact Table

    Grain: one row per bill. Rows are only ever appended; bill_id grows
    monotonically and is used as the change watermark.
    """
    __tablename__ = "fact_billing"

    bill_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Foreign keys (nullable: a bill may reference an unknown customer/month)
    customer_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("dim_customer.customer_id")
    )
    month_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("dim_month.month_id")
    )

    # Measures
    billed_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[Optional[int]] = mapped_column(Integer)

    # Audit
    billed_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )

    customer: Mapped[Optional["DimCustomer"]] = relationship(back_populates="bills")
    month_dim: Mapped[Optional["DimMonth"]] = relationship(back_populates="bills")

    __table_args__ = (
        Index("ix_fact_billing_customer", "customer_id"),
        Index("ix_fact_billing_month", "month_id"),
    )


# =============================================================================
# AGGREGATE ENGINE STATE
# =============================================================================

class AggregateSpecRow(Base):
    """Registered aggregate definition, stored as JSON"""
    __tablename__ = "aggregate_specs"

    spec_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    definition: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )


class MaterializedArtifactRow(Base):
    """
    Current materialized artifact for one spec.

    The partial aggregate states are stored encoded; the row is replaced as a
    whole by each successful refresh.
    """
    __tablename__ = "materialized_artifacts"

    spec_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    watermark: Mapped[Optional[int]] = mapped_column(BigInteger)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    group_count: Mapped[int] = mapped_column(Integer, default=0)
    states: Mapped[str] = mapped_column(Text, nullable=False)


class RefreshRecordRow(Base):
    """Refresh bookkeeping for one spec"""
    __tablename__ = "refresh_records"

    spec_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    last_mode: Mapped[Optional[str]] = mapped_column(String(20))
    last_duration_seconds: Mapped[Optional[float]] = mapped_column(Float)
    refresh_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    in_progress: Mapped[bool] = mapped_column(Boolean, default=False)
