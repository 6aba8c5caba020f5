"""Helper modules for the scRNA-seq condition integration and DE tutorial."""
