"""VM directories, FIFO and vsock connectors, stdio proxies and task management."""