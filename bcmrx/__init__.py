version = 'BCMRX 0.1.0'
