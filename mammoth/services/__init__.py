"""服务层: 注册表、缓存、检出、导入导出与项目生成"""
