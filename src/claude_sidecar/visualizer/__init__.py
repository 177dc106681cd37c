"""Visualizer package - Rich terminal views for sidecar sessions."""

from .sessions import render_session_detail, render_session_list

__all__ = [
	"render_session_detail",
	"render_session_list",
]
