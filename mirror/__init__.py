# mirror/__init__.py
