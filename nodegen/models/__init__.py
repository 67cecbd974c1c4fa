"""
Pydantic models
"""
