from opentunnels.testing.fixtures import (  # noqa
    client_key,
    client_key_file,
    echo_server,
    host_key,
    known_hosts,
    make_config,
    ssh_server,
)
