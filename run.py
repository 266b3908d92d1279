"""Run the miao service."""

from miao.__main__ import main

if __name__ == "__main__":
    main()
