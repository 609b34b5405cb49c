"""Path, scene, imaging and concurrency primitives shared by the media services."""
