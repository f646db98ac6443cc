# bulkstage/defaults.py
"""Default settings - no imports to avoid circular dependencies."""

settings = {
    'default_batch_size': 1000,
    'default_bulk_timeout': 600,  # seconds, 0 disables the limit
    'max_identifier_length': 128,
    'logging': {
        'directory': './logs',
        'level': 'INFO',
        'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        'timestamp_format': '%Y-%m-%d %H:%M:%S',
        'filename_format': '%Y%m%d_%H%M%S',  # Set to '' for single log file (no timestamp)
        'split_errors': True,
        'console': True,
    }
}
