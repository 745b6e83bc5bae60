"""
Speech pipeline components.

    - chunker.py: Sentence-aware chunk ranges
    - voices.py: Voice catalogue and audio formats
    - provider.py: Speech provider client (HTTP)
    - storage.py: Object storage for generated audio (local / S3)
    - queue.py: Priority worker queue with retry scheduling
"""
