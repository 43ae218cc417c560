"""Flag rollout engine test suite.

Test organization:
- tests/unit/: Models, envelope helpers and other pure units
- tests/services/: Evaluation, cache and rollout services
- tests/api/: HTTP surface through the FastAPI TestClient
- tests/conftest.py: Shared pytest fixtures and fake clocks
"""
