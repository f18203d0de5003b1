"""Flow components and collaborator clients."""
