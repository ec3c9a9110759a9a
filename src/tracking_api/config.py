class Config:
    HOST = '0.0.0.0'
    PORT = 3000
    VISITOR_DATA_FILE = 'data/visitors.json'
