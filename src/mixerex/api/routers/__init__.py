"""Token-protected operator routers."""
