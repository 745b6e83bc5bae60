"""
Utility Modules for tts-stream.

    - text.py: Content hashing and whitespace normalization
    - timeit.py: Performance measurement utilities
"""
