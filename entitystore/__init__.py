"""
Persists `Pydantic <https://docs.pydantic.dev/>`_ models to hash-based key-value stores without any per-type
marshalling code. Each entity is saved as one hash under the key ``[namespace:]TypeName:id``, with one hash field per
declared model field. See :mod:`~entitystore.store` for the store implementations.
"""
