# =============================================================================
# mess_core/__init__.py
# Mess Manager offline client core
# =============================================================================
"""
Core package for the Mess Manager offline-capable client.

Sub-packages:
- offline: durable queue, connectivity, response cache, sync, interception
- config: settings loaded from secrets.toml and the environment
- logging: centralized logging setup
- errors: exception hierarchy and UI error handlers
- ui: Streamlit status surface
"""

__version__ = "0.1.0"
