"""TagMesh test suite."""
