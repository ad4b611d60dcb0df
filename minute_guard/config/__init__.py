"""
Configuration loading for tenant limits and process settings.
"""
