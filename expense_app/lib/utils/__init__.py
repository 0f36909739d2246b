"""
Utility modules for the expense application.

- hash_utils: migration checksums
- time_utils: fixed-timezone timestamps
- nanoid: URL-safe user ID generation
"""
