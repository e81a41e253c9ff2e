from .catalog import PersonaCatalog, default_catalog_path

__all__ = ["PersonaCatalog", "default_catalog_path"]
