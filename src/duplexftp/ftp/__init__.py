"""FTP protocol module for duplexftp.

This module handles the control and data connections:
- ReplyCodec: Control connection reply framing
- ControlSession: Single-flight command execution and TLS upgrade
- DataChannelManager: Passive/active data connections
- TransferCoordinator: Joins control replies and data connection ends
- parse_list: Directory listing parser
- ProgressTracker: Transfer progress reporting
- FTPClient: User-facing client
- Exceptions: FTP-specific error types
"""
