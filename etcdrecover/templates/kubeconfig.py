"""Recovery kubeconfig template."""


def get_recovery_kubeconfig_template() -> str:
    """Get the kubelet kubeconfig template pointing at the recovery API server."""
    return """clusters:
- cluster:
    certificate-authority-data: {{ CA }}
    server: https://{{ RECOVERY_SERVER_IP }}:9943
  name: {{ CLUSTER_NAME }}
contexts:
- context:
    cluster: {{ CLUSTER_NAME }}
    user: kubelet
  name: kubelet
current-context: kubelet
preferences: {}
users:
- name: kubelet
  user:
    client-certificate-data: {{ CERT }}
    client-key-data: {{ KEY }}
"""
