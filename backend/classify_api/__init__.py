"""
Classify API Backend — Application Package Initializer
=======================================================

What: Marks the `classify_api` directory as a Python package.
Who:  Imported by uvicorn (`classify_api.main:app`), Alembic and pytest.

Architecture Note:
    The backend follows a layered architecture:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   Services (Business Logic)         │  ← Classification workflow, auth
    ├─────────────────────────────────────┤
    │   Inference Gateway                 │  ← Bounded queue in front of Ollama
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘

    The gateway is the only stateful service: it is built once in the
    application lifespan and handed to route handlers through a dependency.
"""

__version__ = "1.0.0"
