"""Business logic and persistence. No FastAPI imports below this package."""
