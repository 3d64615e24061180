"""Admin API routers."""
