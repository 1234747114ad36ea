"""
Models, exceptions, interfaces and logging shared by the TaskFlow client.
"""
