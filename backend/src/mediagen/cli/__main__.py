"""CLI entry point for mediagen.cli module.

Enables execution via: python -m mediagen.cli (runs the job sweep)
"""

from mediagen.cli.sweep_jobs import main

if __name__ == "__main__":
    main()
