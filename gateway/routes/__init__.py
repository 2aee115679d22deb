"""
Route blueprints for the provisioning gateway.
"""

from .health import health_bp
from .hosts import hosts_bp

__all__ = ['health_bp', 'hosts_bp']
