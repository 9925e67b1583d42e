"""FileBlob service emulators."""
