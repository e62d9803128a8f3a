"""
Application startup and shutdown for the API server
"""
