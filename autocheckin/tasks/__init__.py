# autocheckin/tasks/__init__.py
