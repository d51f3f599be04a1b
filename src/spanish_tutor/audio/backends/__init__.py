"""Desktop audio backends (``pip install 'spanish-tutor[voice]'``).

Modules here import their optional dependencies lazily so the core package
stays importable without audio hardware.
"""
