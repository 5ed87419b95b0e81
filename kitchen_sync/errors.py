class ConfigurationError(Exception):
    """
    A run cannot start because something outside the job is misconfigured
    (credentials, binaries, keys). Fatal for the run, not retried.
    """

    code = "CONFIGURATION_ERROR"
