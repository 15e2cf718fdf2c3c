"""
Command line tools for the backup server.
"""
