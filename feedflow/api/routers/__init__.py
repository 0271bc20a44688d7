"""
FastAPI routers, one module per resource: imports, operations, exports (with
saved export templates) and field mappings.
"""
