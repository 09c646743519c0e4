"""AI Studio — FastAPI REST API layer.

Modules
-------
main
    Application factory (``create_app``), route handlers and the ``main()``
    CLI entry point.
models
    Pydantic models for API request and response validation.
"""
