"""beebridge: FastAPI REST layer.

This package exposes the session coordinator and the settings store to the
desktop UI over a local HTTP surface.

Modules
-------
main
    FastAPI application with all route handlers and the ``main()`` CLI
    entry point.
models
    Pydantic models for API-specific request bodies.
"""
