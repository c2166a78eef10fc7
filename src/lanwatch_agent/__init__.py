"""
lanwatch - Edge Agent package.

This package contains the on-site edge service that:
- discovers devices on the local subnet (nmap or ping sweep)
- keeps the in-memory device registry
- probes every known device on a fixed interval
- debounces online/offline transitions and merge-writes them to the backend
"""
