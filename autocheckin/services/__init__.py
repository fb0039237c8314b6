# autocheckin/services/__init__.py
