"""Engine components: codec, envelope store, snapshots, replay, commit and outbox relay."""
