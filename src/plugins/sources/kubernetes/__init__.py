"""Kubernetes Machine API source plugin."""

from plugins.sources.kubernetes.source import KubernetesMachineSource

__all__ = ["KubernetesMachineSource"]
