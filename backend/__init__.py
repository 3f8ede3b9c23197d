"""
Backend package for the inventory management API.

This package provides the FastAPI application, its ordered middleware
chain and the dashboard route group, served by uvicorn.
"""
