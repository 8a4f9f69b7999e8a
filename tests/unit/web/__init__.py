"""Unit tests for ProgressCalc web route modules.

Testing pattern:
    - Use FastAPI's TestClient against create_app()
    - Override service dependencies with MagicMock(spec=...) services
    - Test actor header requirements and error-to-status mapping
"""
