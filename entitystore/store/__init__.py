"""
Entity stores: Data Access Objects which save :class:`~entitystore.store.base.Entity` models to a hash-based key-value
store. :class:`~entitystore.store.redis.RedisEntityStore` uses Redis (requires the ``redis`` extra), and
:class:`~entitystore.store.memory.InMemoryEntityStore` keeps everything in a dict, which is handy for tests. Both save,
read, and delete entities by key, individually or in batches, and list the keys of every entity of a given type.
"""
