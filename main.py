#!/usr/bin/env python3
"""
Courier - Feed Ingestion Service
================================

Main application entry point.

Usage:
    python main.py --help              # Show all commands
    python main.py check-config        # Validate configuration
    python main.py init-db             # Initialize database
    python main.py add-source URL      # Register a feed
    python main.py crawl-once          # Run a single crawl tick
    python main.py run                 # Run the crawl scheduler
"""

import sys
from pathlib import Path

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent))

from courier.cli import main

if __name__ == "__main__":
    main()
