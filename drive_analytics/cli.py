"""
CLI entry point for the drive-analytics command.
"""
from drive_analytics.runner import main

# Re-export main for the console_scripts entry point
__all__ = ['main']

if __name__ == '__main__':
    main()
