"""
Tenant payment reconciliation engine.

Collapses duplicate (tenant, property, month) payment records into one
canonical row and installs the unique index that keeps them unique.
"""

__version__ = '1.0.0'
