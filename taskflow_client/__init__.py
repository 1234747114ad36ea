"""
TaskFlow session client.
"""
