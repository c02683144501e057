# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
pyftpguard: RFC-959 FTP server with per-client admission control.

A hierarchy of classes outlined below implement the backend
functionality for the FTPd:

    [pyftpguard.servers.FTPServer]
      accepts connections, asks the security ledger whether the
      remote address may connect and hands every admitted connection
      to a dedicated worker thread.

    [pyftpguard.handlers.FTPHandler]
      the server-protocol-interpreter (server-PI, see RFC-959). One
      instance per connection: it reads command lines, enforces the
      login sequence and runs file-system commands inside a root
      directory. File payloads travel on the control connection.

    [pyftpguard.session.Session]
      the per-connection state (auth state, user, current directory,
      pending rename).

    [pyftpguard.security.SecurityLedger]
      per-address connection counts, failed logins, bans and request
      rate windows, shared by all workers.

    [pyftpguard.perfmon.PerformanceLedger]
      process-wide counters (connections, commands, bytes, errors).

    [pyftpguard.authorizers.DummyAuthorizer]
      virtual users and their permissions.

    [pyftpguard.filesystems.AbstractedFS]
      path confinement and directory listing helpers.

Usage example:

>>> from pyftpguard.authorizers import DummyAuthorizer
>>> from pyftpguard.servers import FTPServer
>>>
>>> authorizer = DummyAuthorizer()
>>> authorizer.add_user("user", "12345", perm="rwd")
>>>
>>> server = FTPServer(("127.0.0.1", 2121), root="/srv/ftp",
...                    authorizer=authorizer)
>>> server.serve_forever()
[I 24-02-19 10:55:42] >>> starting FTP server on 127.0.0.1:2121, pid=4315 <<<
[I 24-02-19 10:55:42] root directory: /srv/ftp
[I 24-02-19 10:55:42] max connections: 10 (5 per address)
[I 24-02-19 10:55:45] 127.0.0.1:34178-[] FTP session opened (connect)
[I 24-02-19 10:55:48] 127.0.0.1:34178-[user] USER 'user' logged in.
[I 24-02-19 10:56:27] 127.0.0.1:34178-[user] RETR /srv/ftp/.vimrc completed=1 bytes=1700 seconds=0.001
[I 24-02-19 10:56:39] 127.0.0.1:34178-[user] FTP session closed (disconnect).
"""

__ver__ = "1.0.0"
__author__ = "Giampaolo Rodola' <g.rodola@gmail.com>"
