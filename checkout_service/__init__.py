"""Checkout payment orchestration service.

The FastAPI application lives in :mod:`checkout_service.app.main`.
"""
