"""
nfguard - NFQUEUE firewall rule controller.

Installs the iptables rules that send new connections and DNS responses
to a userspace decision queue, drops denied packets, and keeps those
rules in place while other tools modify the firewall.
"""

__version__ = "1.0.0"
__author__ = "nfguard Team"
