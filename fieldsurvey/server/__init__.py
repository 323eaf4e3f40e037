"""
Append-log sink server.
"""
