"""
Read-only HTTP surface (FastAPI) over the constraint memory engine.
"""
