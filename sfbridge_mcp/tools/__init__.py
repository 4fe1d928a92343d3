"""
MCP tools for SFBridge.

- records: query records on the caller's connected org
"""
