"""
CLI entry point, when used as a module: `python -m gitopsd`.
"""
from gitopsd import cli

if __name__ == '__main__':
    cli.main()
