"""
Upstream item proxy service.
"""
