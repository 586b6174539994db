# api/__init__.py
# ============================================================================
# STOREFRONT — HTTP API
# ============================================================================
# ``api.server.create_app`` builds the FastAPI application;
# ``api.dependencies`` wires repositories and services into a Container.
# ============================================================================
