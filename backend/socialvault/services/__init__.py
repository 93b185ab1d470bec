"""
Services module initialization.
"""
