# OAuth authorization flow, token lifecycle and credential storage
