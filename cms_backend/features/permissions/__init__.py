"""
Permission management feature module.

Implements Role-Based Access Control (RBAC) for the CMS: effective permission
resolution, a TTL cache in front of it, and the decision bundles every
protected list and field is registered with.
"""
