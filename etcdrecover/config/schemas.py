"""Configuration file schemas for etcdrecover."""

RECOVERY_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "asset_dir": {
            "type": "string",
            "description": "Workspace root for backups and staging"
        },
        "config_file_dir": {
            "type": "string",
            "description": "Kubernetes configuration root (static-pod-resources lives here)"
        },
        "manifest_dir": {
            "type": "string"
        },
        "manifest_stopped_dir": {
            "type": ["string", "null"]
        },
        "manifest_name": {
            "type": "string",
            "pattern": r"^[^/]+$"
        },
        "cert_agent_manifest": {
            "type": "string",
            "pattern": r"^[^/]+$"
        },
        "etcd_conf": {
            "type": "string"
        },
        "data_dir": {
            "type": "string"
        },
        "static_resource_dir": {
            "type": "string"
        },
        "supervisor_unit": {
            "type": "string"
        },
        "dial_timeout": {
            "type": "number",
            "exclusiveMinimum": 0
        },
        "restore_command": {
            "type": "string"
        },
        "cert_quorum": {
            "type": "integer",
            "minimum": 1
        },
        "cert_poll_interval": {
            "type": "number",
            "exclusiveMinimum": 0
        },
        "endpoints": {
            "type": "array",
            "items": {
                "type": "string",
                "pattern": r"^(https?://)?[^,\s]+$"
            }
        }
    },
    "additionalProperties": False
}
