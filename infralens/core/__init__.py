"""Cross-cutting helpers: logging setup and job queue access."""
