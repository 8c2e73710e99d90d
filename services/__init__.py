"""
Blood Exchange engine services
"""
