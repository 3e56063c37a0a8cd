"""Store components: object store, tree builder, checkout, mappings, builds, GC."""
