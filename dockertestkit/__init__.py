"""Create, start and inspect throwaway Docker containers for integration tests, over the Docker Engine API."""

__version__ = "0.1.0"