"""Task orchestration runtime."""
