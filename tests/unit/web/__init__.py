"""Unit tests for PriceBridge web route modules.

Testing pattern:
    - Use FastAPI's TestClient for route testing
    - Inject a mocked service graph through ``create_app(services=...)``
    - Test status code mapping and request validation
"""
