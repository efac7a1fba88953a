"""
Pod Healer - Operator API
"""
