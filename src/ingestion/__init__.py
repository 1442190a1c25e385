"""
Data Ingestion Module
"""
from .seed_db import build_months, export_parquet, generate_bills, generate_customers, seed

__all__ = [
    "build_months",
    "export_parquet",
    "generate_bills",
    "generate_customers",
    "seed",
]
