"""API routes for the tablesync server."""
