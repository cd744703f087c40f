"""
HTTP Input Plugin.

This plugin provides a REST API for triggers and scope status.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
