"""
Core records and error mapping shared by every pipeline stage.
"""
