"""
ClawUI Server
=============

FastAPI application exposing the blueprint execution engine.
"""
