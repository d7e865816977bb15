# depwatch/api/__init__.py
"""
HTTP API.

Endpoints:
    GET    /                    health / readiness
    GET    /metrics             Prometheus exposition
    GET    /services            registered services + last scan status
    POST   /scan/<service>      ?mode=sync|async
    POST   /scan/all            ?mode=sync|async
    POST   /scan/custom         ad-hoc (path, ecosystem) scan
    GET    /results/<service>   latest result envelope
    GET    /vulnerabilities     ?severity=&service=
    GET    /jobs                ?service=&limit=
    GET    /jobs/<id>           job status
    DELETE /jobs/<id>           cancel
    POST   /admin/reload        re-read the service registry
"""

from depwatch.api.routes import api_bp

__all__ = ["api_bp"]
