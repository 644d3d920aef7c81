"""Allow running the Event Bus as a module: python -m eventbus."""

from eventbus.runner import main

if __name__ == "__main__":
    main()
