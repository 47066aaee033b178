"""qaboard — бэкенд QA-дашборда: приём JUnit XML, нормализация, триаж падений."""

__version__ = "0.1.0"
