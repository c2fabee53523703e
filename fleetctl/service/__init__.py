from .service_components import ServiceComponents

__all__ = ["ServiceComponents"]
