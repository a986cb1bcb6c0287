"""HTTP routers mounted by :func:`codemap.api.app.create_app`."""
