"""
WBS MCP Server

Work Breakdown Structure service exposing tasks, artifacts, completion
conditions and inter-task dependencies to MCP clients over stdio.
"""

__version__ = "0.1.0"
