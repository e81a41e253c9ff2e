from .app import create_app, render, templates

__all__ = ["create_app", "render", "templates"]
