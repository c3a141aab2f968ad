class BadConfig(Exception):
    pass


class ConfigFileError(Exception):
    pass
