"""HTTP surface: FastAPI router and request/response schemas."""
