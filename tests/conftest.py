import os

# The database module refuses to import without DATABASE_URL
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_checkout.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
