"""
Background tasks for the run club service.
"""
