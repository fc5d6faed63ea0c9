"""Playbook Engine - workflow orchestration over a generic record store"""

__version__ = "1.0.0"
