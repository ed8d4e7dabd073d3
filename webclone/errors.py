from typing import Optional


class WebcloneError(Exception):
    pass


class ConfigError(WebcloneError):
    pass


class StartupError(WebcloneError):
    pass


class PageStatusError(WebcloneError):
    def __init__(self, status: int, url: Optional[str] = None):
        self.status = status
        self.url = url
        super().__init__(f"main page navigation failed with status {status}")


class AssetAbortError(WebcloneError):
    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status
        super().__init__(f"asset {url} was rate-limited with status {status}")


class VideoDownloadError(WebcloneError):
    pass


class FilenameTooLongError(VideoDownloadError):
    def __init__(self, message: str = "file name too long"):
        super().__init__(message)


class NavigationError(WebcloneError):
    pass
