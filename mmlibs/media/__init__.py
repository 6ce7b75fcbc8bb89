"""Media input descriptors, raw buffers and decoders."""
