from migration.loaders.batch_loader import ChunkedLoader, check_homogeneous, store_error_code

__all__ = ["ChunkedLoader", "check_homogeneous", "store_error_code"]
