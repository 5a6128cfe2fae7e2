"""
Utility Functions and Logging Configuration
============================================

This module provides helper functions for:
- Logging setup and management
- Configuration file loading
- Memory monitoring
- EMSet checkpoint I/O

"""

import logging
import os
import sys
import yaml
import psutil
from pathlib import Path
from typing import Dict, Any, Optional, Union


DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "defaults.yaml"


def setup_logging(
    log_file: Optional[str] = None,
    log_level: Optional[str] = None,
    console_output: bool = True
) -> logging.Logger:
    """
    Configure logging for the package.

    Parameters
    ----------
    log_file : str, optional
        Path to log file. If None, logs only to console.
    log_level : str, optional
        Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL.
        If None, uses `logging.log_level` from the default configuration.
    console_output : bool, default True
        Whether to output logs to console

    Returns
    -------
    logging.Logger
        Configured logger instance

    Examples
    --------
    >>> logger = setup_logging(log_file="results/reports/subsetting.log")
    >>> logger.info("Subsetting started")
    """
    if log_level is None:
        log_level = load_config()['logging']['log_level']

    logger = logging.getLogger("ascend")
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    logger.handlers = []

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file is not None:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger() -> logging.Logger:
    """
    Return the package logger, configuring it only if nothing has yet.

    Handlers installed by an earlier `setup_logging` call (e.g. a log file)
    are kept.

    Returns
    -------
    logging.Logger
        The "ascend" logger
    """
    logger = logging.getLogger("ascend")
    if not logger.handlers:
        logger = setup_logging()
    return logger


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load YAML configuration file, merged over the packaged defaults.

    Each top-level section of the user file updates the matching default
    section key by key, so a file only needs to list the values it changes.

    Parameters
    ----------
    config_path : str or Path, optional
        Path to YAML configuration file. If None, the defaults are returned.

    Returns
    -------
    dict
        Configuration dictionary

    Raises
    ------
    FileNotFoundError
        If `config_path` does not exist

    Examples
    --------
    >>> config = load_config("config/subset_params.yaml")
    >>> print(config['emset']['batch_column'])
    """
    with open(DEFAULT_CONFIG_PATH, 'r') as f:
        config = yaml.safe_load(f)

    if config_path is None:
        return config

    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        user_config = yaml.safe_load(f) or {}

    for section, values in user_config.items():
        if isinstance(values, dict) and isinstance(config.get(section), dict):
            config[section].update(values)
        else:
            config[section] = values

    return config


def get_memory_usage() -> Dict[str, float]:
    """
    Get current memory usage statistics.

    Returns
    -------
    dict
        Dictionary with memory statistics:
        - ram_used_gb: RAM used in GB
        - ram_available_gb: Available RAM in GB
        - ram_percent: RAM usage percentage
        - process_rss_gb: Resident memory of the current process in GB
    """
    memory = psutil.virtual_memory()
    process = psutil.Process(os.getpid())

    return {
        'ram_used_gb': memory.used / (1024 ** 3),
        'ram_available_gb': memory.available / (1024 ** 3),
        'ram_percent': memory.percent,
        'process_rss_gb': process.memory_info().rss / (1024 ** 3),
    }


def log_memory_usage(logger: logging.Logger) -> None:
    """
    Log current memory usage.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance
    """
    mem = get_memory_usage()

    logger.debug(
        f"Memory usage - RAM: {mem['ram_used_gb']:.2f} GB "
        f"({mem['ram_percent']:.1f}%), "
        f"Available: {mem['ram_available_gb']:.2f} GB, "
        f"Process: {mem['process_rss_gb']:.2f} GB"
    )


def ensure_dir(path: Union[str, Path]) -> Path:
    """
    Create directory if it doesn't exist.

    Parameters
    ----------
    path : str or Path
        Directory path

    Returns
    -------
    Path
        Path object of the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_checkpoint(
    obj: Any,
    filepath: Union[str, Path],
    compression: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Save checkpoint file.

    EMSets are written as H5AD through their AnnData view; any other object
    is pickled.

    Parameters
    ----------
    obj : any
        Object to save (typically an EMSet)
    filepath : str or Path
        Path to save checkpoint
    compression : str, optional
        H5AD compression. If None, uses the `checkpoint.compression` default.
    logger : logging.Logger, optional
        Logger instance

    Examples
    --------
    >>> save_checkpoint(emset, "data/processed/batch_a.h5ad", logger=logger)
    """
    if logger is None:
        logger = get_logger()

    filepath = Path(filepath)
    ensure_dir(filepath.parent)

    if hasattr(obj, 'to_anndata'):
        if compression is None:
            compression = load_config()['checkpoint']['compression']
        obj.to_anndata().write_h5ad(filepath, compression=compression)
    else:
        import pickle
        with open(filepath, 'wb') as f:
            pickle.dump(obj, f)

    logger.info(f"Checkpoint saved: {filepath}")
    log_memory_usage(logger)


def load_checkpoint(
    filepath: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Any:
    """
    Load checkpoint file.

    Parameters
    ----------
    filepath : str or Path
        Path to checkpoint file
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    any
        Loaded object; `.h5ad` files come back as an EMSet

    Raises
    ------
    FileNotFoundError
        If `filepath` does not exist

    Examples
    --------
    >>> emset = load_checkpoint("data/processed/batch_a.h5ad", logger=logger)
    """
    import anndata
    import pickle

    from .emset import EMSet

    if logger is None:
        logger = get_logger()

    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Checkpoint not found: {filepath}")

    if filepath.suffix == '.h5ad':
        obj = EMSet.from_anndata(anndata.read_h5ad(filepath))
    else:
        with open(filepath, 'rb') as f:
            obj = pickle.load(f)

    logger.info(f"Checkpoint loaded: {filepath}")
    log_memory_usage(logger)

    return obj
