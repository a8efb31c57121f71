"""Status hook installation and sidecar file reading."""
