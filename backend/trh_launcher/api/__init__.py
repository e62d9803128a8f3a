"""
FastAPI server exposing the setup pipeline to the web UI
"""
