"""Static-pod and host service lifecycle control for etcdrecover."""

from .lifecycle import LifecycleController
from .supervisor import ServiceSupervisor

__all__ = ["LifecycleController", "ServiceSupervisor"]
