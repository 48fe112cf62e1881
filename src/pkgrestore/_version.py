# Replaced by the release build; read through pkgrestore.self_update.read_running_version().
__version__ = "0.4.0"
