"""HTTP API: FastAPI application, routes and background jobs."""
