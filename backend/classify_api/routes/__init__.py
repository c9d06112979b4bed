# Routes package init
"""
Classify API Backend — API Routes Package
=========================================

Route Inventory:
    - auth.py:      POST /api/v1/auth/register, POST /api/v1/auth/login,
                    GET  /api/v1/auth/me
    - classify.py:  POST   /api/v1/classify/image
                    GET    /api/v1/classify/status
                    GET    /api/v1/classify/history
                    GET    /api/v1/classify/search
                    GET    /api/v1/classify/samples
                    GET    /api/v1/classify/{id}
                    DELETE /api/v1/classify/{id}
    - health.py:    GET /health

Routes are thin: extract input, call a service, shape the response.
"""
