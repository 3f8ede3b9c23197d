"""
Client state container for the inventory management app.

One store holds the ``global`` slice and the ``api`` data-fetching slice;
the ``global`` slice is persisted to a pluggable key-value storage backend
and rehydrated asynchronously before the provider exposes its children.
"""
