"""Configuration templates for etcdrecover."""
