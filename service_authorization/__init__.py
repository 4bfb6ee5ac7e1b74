"""
Authorization service.
"""
