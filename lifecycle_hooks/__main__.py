"""Allow running the CLI as: python -m lifecycle_hooks"""

from lifecycle_hooks.main import main_entry

if __name__ == "__main__":
    main_entry()
