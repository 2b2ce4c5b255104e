# paydesk/api/__init__.py
from paydesk.api.server import (
    PaydeskServices,
    build_services,
    create_app,
    main,
)

__all__ = [
    "PaydeskServices",
    "build_services",
    "create_app",
    "main",
]
