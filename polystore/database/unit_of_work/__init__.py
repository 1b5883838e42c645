# ==============================================================================
# UNIT OF WORK PACKAGE INITIALIZATION
# ==============================================================================

"""
Unit of Work Pattern Implementation
===================================

Provides the commit/rollback/release protocol shared by every
adapter's ``transaction()``:
- UnitOfWork: Coordinates one native transaction around a callback
"""

from polystore.database.unit_of_work.uow import UnitOfWork

__all__ = [
    "UnitOfWork",
]
