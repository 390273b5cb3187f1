"""
HTTP Input Plugin.

Status API: health, sync status, manual reconcile and event stream.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
