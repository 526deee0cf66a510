"""
Allotment - Utilities Package
"""
