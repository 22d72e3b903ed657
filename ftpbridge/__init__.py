"""
ftpbridge - FTP/FTPS/SFTP transfer engine with a queued, throttled scheduler
"""

__version__ = '0.1.0'
