#!/usr/bin/env python3
"""
arduflash - Main entry point.
Wrapper script that calls the main function from the arduflash package.
"""

import sys
from arduflash.cli import main

if __name__ == "__main__":
    sys.exit(main())
