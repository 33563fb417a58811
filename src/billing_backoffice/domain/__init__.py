"""Domain layer: the Invoice aggregate, its value objects, and the outbox base.

Nothing in this package performs I/O on its own.  Collaborators (settings
provider, job store, expense factory, event delivery) are injected as
callables by the service layer.
"""
