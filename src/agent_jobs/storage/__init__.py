"""SQLite persistence helpers shared by job repositories and the queue."""
