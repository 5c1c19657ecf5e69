"""Sandbox module for isolated per-version workspaces and subprocess limits."""

from worker.sandbox.limits import ResourceLimits, apply_resource_limits
from worker.sandbox.workspace import Workspace, version_workspace

__all__ = ["ResourceLimits", "Workspace", "apply_resource_limits", "version_workspace"]
