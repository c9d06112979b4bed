# Services package init
"""
Classify API Backend — Services Layer
=====================================

What:  Business logic layer sitting between routes (HTTP) and database (persistence).
How:   Services accept domain objects, apply business rules, and return schemas.

Service Inventory:
    - InferenceBackend (abstract): Interface for vision-model providers
    - OllamaService: Concrete backend calling an Ollama server over HTTP
    - InferenceGateway: Bounded concurrency queue in front of the backend
    - ImageService: Decoding, size/type validation and hashing of uploads
    - ClassificationService: record → gateway → persist workflow, history, stats
    - AuthService: Registration and login
"""
