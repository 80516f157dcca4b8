"""Allow `python -m cdptap`."""

from cdptap import main

if __name__ == "__main__":
    main()
