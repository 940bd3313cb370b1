"""
Operator tools for the backup server.
"""
