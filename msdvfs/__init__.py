"""In-memory FAT16 mass-storage volume with drag-and-drop transfer tracking."""

__version__ = "0.1.0"
__all__ = ["fat", "virtual_fs", "user", "transfer", "manager"]