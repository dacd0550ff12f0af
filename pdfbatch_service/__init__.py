"""
Batch HTML-to-PDF rendering service package.

Exposes reusable primitives for caching the shared logo, preprocessing
HTML, driving Chromium sessions, assembling ZIP archives and serving the
FastAPI application.
"""
