class ProxyError(Exception):
    pass


class ConfigError(ProxyError, ValueError):
    pass


class NoReachableBackendError(ProxyError):
    def __init__(self, backends):
        self.backends = list(backends)
        urls = ", ".join(b.url for b in self.backends)
        super().__init__(f"no reachable backend among: {urls}")
