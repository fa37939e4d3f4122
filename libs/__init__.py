"""RoleGraph shared libraries.

- common: settings and errors
- models: knowledge graph models
- storage, firestore, firebase: graph persistence
- caching: Redis client and stage snapshots
"""
