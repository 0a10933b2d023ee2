"""Server module - FastAPI sync endpoints over SQLAlchemy."""
