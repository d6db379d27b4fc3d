"""Adapters layer for the reconciliation engine.

This module contains input/output adapters that interface with external systems.
Adapters implement Port interfaces defined in the domain layer: source readers
turn workbooks into SheetViews, storage adapters persist canonical entities.
"""
