"""etcdrecover - disaster recovery utilities for etcd static-pod members."""

__version__ = "0.1.0"
__author__ = "etcdrecover maintainers"
