# autocheckin/cli/__init__.py
