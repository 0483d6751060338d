"""Entry point for ``python -m payroll_batch``."""

import sys

from payroll_batch.cli import main

if __name__ == "__main__":
    sys.exit(main())
