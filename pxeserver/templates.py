"""
Built-in configuration templates.

Placeholders use envsubst syntax (``${NAME}``). A file with the same name
in the template directory replaces the built-in text. Placeholders that
are not render options (nginx's ``$uri`` for example) pass through as-is.
"""

DHCPD_CONF = """\
# PXE Boot Server DHCP Configuration
# Generated automatically - do not edit manually

authoritative;
ddns-update-style none;

default-lease-time ${DHCP_LEASE_TIME};
max-lease-time ${DHCP_MAX_LEASE_TIME};

option domain-name "${DHCP_DOMAIN}";
option domain-name-servers ${DHCP_DNS};

subnet ${DHCP_SUBNET} netmask ${DHCP_NETMASK} {
    range ${DHCP_RANGE_START} ${DHCP_RANGE_END};
    option routers ${DHCP_ROUTER};
    option subnet-mask ${DHCP_NETMASK};

    # PXE boot
    next-server ${HTTP_SERVER_IP};
    filename "pxelinux.0";
}
"""

NGINX_CONF = """\
# PXE Boot Server HTTP Configuration
# Generated automatically - do not edit manually

worker_processes 1;
pid ${NGINX_PID_FILE};
error_log stderr warn;

events {
    worker_connections 1024;
}

http {
    include /etc/nginx/mime.types;
    default_type application/octet-stream;
    access_log /dev/stdout;

    sendfile on;
    tcp_nopush on;
    keepalive_timeout 65;

    client_body_temp_path ${RUN_DIR}/nginx-client-body;
    proxy_temp_path ${RUN_DIR}/nginx-proxy;
    fastcgi_temp_path ${RUN_DIR}/nginx-fastcgi;
    uwsgi_temp_path ${RUN_DIR}/nginx-uwsgi;
    scgi_temp_path ${RUN_DIR}/nginx-scgi;

    server {
        listen ${NGINX_PORT};
        server_name _;
        root ${HTTP_ROOT};

        location = /health {
            access_log off;
            default_type text/plain;
            return 200 "healthy\\n";
        }

        location /images/ {
            autoindex on;
        }

        location / {
            try_files $uri =404;
        }
    }
}
"""

PXELINUX_DEFAULT = """\
# PXE Boot Menu
# Generated automatically - do not edit manually

DEFAULT menu.c32
PROMPT 0
TIMEOUT ${PXE_TIMEOUT}
ONTIMEOUT ${PXE_DEFAULT}

MENU TITLE PXE Boot Menu

LABEL local
    MENU LABEL Boot from local disk
    LOCALBOOT 0
${MENU_ENTRIES}"""

MENU_ENTRY = """
LABEL ${TAG}
    MENU LABEL Install ${TAG}
    KERNEL ${BOOT_URL}/images/${TAG}/vmlinuz
    APPEND initrd=${BOOT_URL}/images/${TAG}/initrd.img ip=dhcp
"""

BUILTIN = {
    "dhcpd.conf": DHCPD_CONF,
    "nginx.conf": NGINX_CONF,
    "pxelinux.cfg/default": PXELINUX_DEFAULT,
}
