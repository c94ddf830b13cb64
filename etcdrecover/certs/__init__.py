"""etcd certificate discovery for etcdrecover."""

from .manager import CertificateBundle, CertificateManager

__all__ = ["CertificateBundle", "CertificateManager"]
