"""SkyGate: secure forwarding gateway for the VPN subscription service.

SkyGate sits between the browser client and the upstream systems it must
never talk to directly (the n8n workflow webhooks and the 3x-ui panel API),
keeping operator secrets on the server side.

Key features:
    - Fail-closed CORS policy in production, permissive in development
    - HTTP to HTTPS redirect in production (health checks exempt)
    - One route table and one forwarder for every upstream
    - Server-held secret injection (API key, bearer token, panel session)
    - Optional Firestore-backed settings with graceful degradation
    - Prometheus metrics and structured JSON logs

Example:
    >>> from skygate.main import create_app
    >>> app = create_app(env={"SKYGATE_ENV": "development"})
"""

__all__ = ["__version__"]

__version__ = "0.3.0"
