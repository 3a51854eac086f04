"""Platform access: HTTP client and typed query builder"""
