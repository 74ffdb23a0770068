"""
Gateway Application
===================

FastAPI service that routes inbound requests by longest matching path
prefix and forwards them to backend targets, directly or through an HTTP
or SOCKS5 egress proxy.

Modules:
    - config.py: runtime settings and route document loading
    - models.py: egress, route and gateway configuration models
    - exceptions.py: gateway error taxonomy
    - proxy/: matching, egress selection and forwarding
    - main.py: application factory and console entry point
"""
